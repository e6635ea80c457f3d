from lb_resources import (Backend, BackendService, FirewallRule, ForwardingRule, HealthCheck, Instance,
                          ManagedInstanceGroup, Nat, SourceImage)


def test_firewall_rule_command():
    rule = FirewallRule('fw-allow-health-checks', ['tcp:80'], ['130.211.0.0/22', '35.191.0.0/16'],
                        ['allow-health-checks'])

    assert rule.create_commands() == [[
        'compute', 'firewall-rules', 'create', 'fw-allow-health-checks',
        '--direction=INGRESS', '--priority=1000', '--network=default', '--action=ALLOW',
        '--rules=tcp:80', '--source-ranges=130.211.0.0/22,35.191.0.0/16',
        '--target-tags=allow-health-checks',
    ]]
    assert rule.delete_command() == ['compute', 'firewall-rules', 'delete', 'fw-allow-health-checks']
    assert rule.references() == []


def test_nat_is_scoped_to_its_router():
    nat = Nat('nat-config', 'nat-router-us1', 'us-central1')

    assert nat.delete_command() == ['compute', 'routers', 'nats', 'delete', 'nat-config',
                                    '--router=nat-router-us1', '--region=us-central1']
    assert '--auto-allocate-nat-external-ips' in nat.create_commands()[0]
    assert nat.references() == [('router', 'nat-router-us1')]


def test_private_instance_has_no_external_address():
    vm = Instance('webserver', 'us-central1-c', 'e2-micro', 'debian-11-bullseye-v20231115',
                  image_project='debian-cloud', external_ip=False, shielded_vm=True)
    flags = vm.create_commands()[0]

    assert '--network-interface=network-tier=PREMIUM,subnet=default,no-address' in flags
    assert '--image-project=debian-cloud' in flags
    assert '--shielded-vtpm' in flags
    assert '--zone=us-central1-c' in flags
    assert vm.references() == []


def test_instance_from_custom_image_references_it():
    vm = Instance('stress-test', 'us-east1-b', 'e2-medium', 'mywebserver')

    assert vm.references() == [('image', 'mywebserver')]
    assert '--network-interface=network-tier=PREMIUM,subnet=default' in vm.create_commands()[0]


def test_image_needs_its_source_vm():
    image = SourceImage('mywebserver', 'webserver', 'us-central1-c', family='webserver-family')

    assert image.references() == [('instance', 'webserver')]
    assert '--family=webserver-family' in image.create_commands()[0]


def test_health_check_protocol_is_positional():
    assert HealthCheck('http-health-check').create_commands() == [
        ['compute', 'health-checks', 'create', 'tcp', 'http-health-check', '--port=80']
    ]


def test_managed_group_sets_autoscaling_and_autohealing():
    group = ManagedInstanceGroup('us-1-mig', 'mywebserver-template', 'us-central1', 'http-health-check',
                                 min_replicas=1, max_replicas=2, target_utilization=0.8)
    create, autoscaling, autohealing = group.create_commands()

    assert create[:5] == ['compute', 'instance-groups', 'managed', 'create', 'us-1-mig']
    assert '--template=mywebserver-template' in create
    assert autoscaling[3] == 'set-autoscaling'
    assert '--max-num-replicas=2' in autoscaling
    assert '--min-num-replicas=1' in autoscaling
    assert '--target-load-balancing-utilization=0.8' in autoscaling
    assert '--cool-down-period=60s' in autoscaling
    assert autohealing[3] == 'set-autohealing'
    assert '--health-check=http-health-check' in autohealing
    assert group.references() == [('instance-template', 'mywebserver-template'),
                                  ('health-check', 'http-health-check')]


def test_backend_service_adds_each_backend():
    service = BackendService('http-backend', 'http-health-check', [
        Backend('us-1-mig', 'us-central1', 'RATE', max_rate_per_instance=50),
        Backend('notus-1-mig', 'europe-west1', 'UTILIZATION', max_utilization=0.8),
    ])
    create, rate, utilization = service.create_commands()

    assert '--enable-logging' in create
    assert '--logging-sample-rate=1.0' in create
    assert create[-1] == '--global'
    assert '--max-rate-per-instance=50' in rate
    assert not any(flag.startswith('--max-utilization') for flag in rate)
    assert '--instance-group-region=europe-west1' in utilization
    assert '--max-utilization=0.8' in utilization


def test_ipv6_forwarding_rule():
    v4 = ForwardingRule('http-lb-ipv4', 'http-lb-proxy')
    v6 = ForwardingRule('http-lb-ipv6', 'http-lb-proxy', ip_version='IPV6')

    assert not any(flag.startswith('--ip-version') for flag in v4.create_commands()[0])
    assert '--ip-version=IPV6' in v6.create_commands()[0]
    assert v6.describe_command() == ['compute', 'forwarding-rules', 'describe', 'http-lb-ipv6', '--global']
    assert str(v6) == 'forwarding-rule http-lb-ipv6'
