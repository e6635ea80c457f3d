import pytest

from fakes import FakeHttp
from gcp_lb import REQUIRED_SERVICES, build_descriptors, build_steps, get_lb_addresses, setup, wait_until_serving
from instance_manager import bake_image, webserver_instance
from lab_errors import GcloudError, ProvisioningError, ReadinessTimeout
from lb_resources import InstanceTemplate
from pipeline import Orchestrator, StepStatus
from readiness import Poller


def resource_creates(fake_api):
    return [(kind, name) for op, kind, name in fake_api.calls if op == 'create']


def test_firewall_rule_is_created_first_with_its_fields(fake_api, config):
    setup(fake_api, config)

    first, second = fake_api.created[0], fake_api.created[1]
    assert first.kind == 'firewall-rule'
    assert first.name == 'fw-allow-health-checks'
    assert first.allowed == ['tcp:80']
    assert first.source_ranges == ['130.211.0.0/22', '35.191.0.0/16']
    assert second.kind == 'router'
    assert second.name == 'nat-router-us1'


def test_setup_creates_everything_in_dependency_order(fake_api, config):
    results, _ = setup(fake_api, config)

    assert resource_creates(fake_api) == [
        ('firewall-rule', 'fw-allow-health-checks'),
        ('router', 'nat-router-us1'),
        ('nat', 'nat-config'),
        ('instance', 'webserver'),
        ('image', 'mywebserver'),
        ('health-check', 'http-health-check'),
        ('instance-template', 'mywebserver-template'),
        ('instance-group', 'us-1-mig'),
        ('instance-group', 'notus-1-mig'),
        ('backend-service', 'http-backend'),
        ('url-map', 'http-lb'),
        ('target-http-proxy', 'http-lb-proxy'),
        ('forwarding-rule', 'http-lb-ipv4'),
        ('forwarding-rule', 'http-lb-ipv6'),
    ]
    assert all(r.status == StepStatus.CREATED for r in results)
    assert fake_api.services == REQUIRED_SERVICES


def test_instance_groups_exist_before_backend_service(fake_api, config):
    setup(fake_api, config)

    names = [r.name for r in fake_api.created]
    groups = [r for r in fake_api.created if r.kind == 'instance-group']
    service = next(r for r in fake_api.created if r.kind == 'backend-service')

    assert [g.name for g in groups] == ['us-1-mig', 'notus-1-mig']
    for group in groups:
        assert group.min_replicas == 1
        assert group.max_replicas == 2
        assert group.target_utilization == 0.8
        assert names.index(group.name) < names.index('http-backend')
    assert [b.group for b in service.backends] == ['us-1-mig', 'notus-1-mig']
    assert ('instance-group', 'us-1-mig') in service.references()
    assert ('instance-group', 'notus-1-mig') in service.references()


def test_fake_rejects_out_of_order_reference(fake_api, config):
    template = InstanceTemplate(config.template_name, config.image_name, config.machine_type)

    with pytest.raises(GcloudError):
        fake_api.create(template)


def test_image_is_baked_from_a_stopped_temporary_vm(fake_api, config):
    setup(fake_api, config)

    ops = [(op, name) for op, _, name in fake_api.calls if name in ('webserver', 'mywebserver')]
    assert ops[:2] == [('create', 'webserver'), ('ssh', 'webserver')]
    assert ops.index(('stop', 'webserver')) < ops.index(('create', 'mywebserver'))
    assert ops[-1] == ('delete', 'webserver')
    assert any('apache2' in command for _, command in fake_api.ssh_commands)
    assert ('instance', 'webserver') not in fake_api.existing


def test_image_bake_times_out_if_vm_never_stops(fake_api, config):
    fake_api.stop_instance = lambda instance: None
    steps = build_steps(fake_api, config, poller=Poller(0, max_attempts=2))

    with pytest.raises(ProvisioningError) as excinfo:
        Orchestrator(steps).provision()

    assert excinfo.value.step == 'mywebserver'
    assert isinstance(excinfo.value.cause, ReadinessTimeout)


def test_bake_resumes_from_a_vm_stopped_by_an_earlier_run(fake_api, config):
    vm = webserver_instance(config)
    fake_api.seed(vm)
    fake_api.states[vm.key] = {'name': vm.name, 'status': 'TERMINATED'}

    bake_image(fake_api, config)

    assert fake_api.ssh_commands == []
    assert ('stop', 'instance', 'webserver') not in fake_api.calls
    assert ('image', 'mywebserver') in fake_api.existing
    assert ('instance', 'webserver') not in fake_api.existing


def test_bake_starts_a_leftover_vm_before_configuring_it(fake_api, config):
    vm = webserver_instance(config)
    fake_api.seed(vm)
    fake_api.states[vm.key] = {'name': vm.name, 'status': 'SUSPENDED'}

    bake_image(fake_api, config)

    ops = [op for op, _, name in fake_api.calls if name == 'webserver']
    assert ops.index('start') < ops.index('ssh') < ops.index('stop')
    assert ('image', 'mywebserver') in fake_api.existing


def test_setup_rerun_skips_existing_resources(fake_api, config):
    setup(fake_api, config)
    created = len(fake_api.created)

    results, _ = setup(fake_api, config)

    assert len(fake_api.created) == created
    statuses = {r.name: r.status for r in results}
    assert statuses['mywebserver'] == StepStatus.EXISTS
    assert statuses['us-1-mig'] == StepStatus.EXISTS
    assert statuses['http-lb-ipv6'] == StepStatus.EXISTS
    # Nothing was rebuilt, so no SSH session either
    assert len([c for c in fake_api.calls if c[0] == 'ssh']) == 2


def test_fatal_error_aborts_remaining_steps(fake_api, config):
    fake_api.fail_create['http-health-check'] = GcloudError("Quota 'HEALTH_CHECKS' exceeded")

    with pytest.raises(ProvisioningError) as excinfo:
        setup(fake_api, config)

    assert excinfo.value.step == 'http-health-check'
    assert 'mywebserver' in excinfo.value.completed
    assert not any(r.kind == 'instance-template' for r in fake_api.created)
    # No rollback: what was created stays
    assert ('firewall-rule', 'fw-allow-health-checks') in fake_api.existing


def test_unstable_groups_block_backend_service(fake_api, config):
    resources = build_descriptors(config)
    fake_api.states[resources.groups[1].key] = {'status': {'isStable': False}}
    steps = build_steps(fake_api, config, poller=Poller(0, max_attempts=3))

    with pytest.raises(ProvisioningError) as excinfo:
        Orchestrator(steps).provision()

    assert excinfo.value.step == 'wait-instance-groups'
    assert isinstance(excinfo.value.cause, ReadinessTimeout)
    assert not any(r.kind == 'backend-service' for r in fake_api.created)


def test_get_lb_addresses(fake_api, config):
    assert get_lb_addresses(fake_api, config) == ('', '')

    _, addresses = setup(fake_api, config)

    assert addresses == ('34.120.10.20', '2600:1901:0:1::')


def test_wait_until_serving_blocks_until_first_page(config):
    http = FakeHttp(failures=4)

    result = wait_until_serving(config, '34.120.10.20', http_get=http)

    assert result.succeeded
    assert result.attempts == 5
    assert http.urls[0] == 'http://34.120.10.20/'


def test_descriptors_follow_config(config):
    resources = build_descriptors(config)

    assert resources.router.region == 'us-central1'
    assert resources.nat.router == resources.router.name
    assert resources.template.source_image == resources.image.name
    assert [g.region for g in resources.groups] == ['us-central1', 'europe-west1']
    rate, utilization = resources.backend_service.backends
    assert (rate.balancing_mode, rate.max_rate_per_instance) == ('RATE', 50)
    assert (utilization.balancing_mode, utilization.max_utilization) == ('UTILIZATION', 0.8)
    assert [r.ip_version for r in resources.forwarding_rules] == ['IPV4', 'IPV6']
