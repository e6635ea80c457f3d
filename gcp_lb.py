import argparse
import logging
import sys
from dataclasses import dataclass
from typing import List

from gcloud_cli import GcloudCompute
from instance_manager import bake_image, source_image
from lab_config import configure_logging, load_config, resolve_project
from lab_errors import LabError
from lb_resources import (Backend, BackendService, FirewallRule, ForwardingRule, HealthCheck,
                          InstanceTemplate, ManagedInstanceGroup, Nat, Router, SourceImage,
                          TargetHttpProxy, UrlMap)
from pipeline import Orchestrator, Step, StepStatus, resource_step
from readiness import Poller, serves_marker

logger = logging.getLogger(__name__)

REQUIRED_SERVICES = ['compute.googleapis.com', 'logging.googleapis.com']


@dataclass
class ResourceSet:
    """Everything setup creates, in creation order."""
    firewall: FirewallRule
    router: Router
    nat: Nat
    image: SourceImage
    health_check: HealthCheck
    template: InstanceTemplate
    groups: List[ManagedInstanceGroup]
    backend_service: BackendService
    url_map: UrlMap
    proxy: TargetHttpProxy
    forwarding_rules: List[ForwardingRule]


def build_descriptors(config):
    groups = [
        ManagedInstanceGroup(
            name=b.group_name,
            template=config.template_name,
            region=b.region,
            health_check=config.health_check_name,
            size=config.group_size,
            min_replicas=config.min_replicas,
            max_replicas=config.max_replicas,
            target_utilization=config.target_utilization,
            cool_down_period=config.cool_down_period,
            initial_delay=config.autohealing_initial_delay,
        )
        for b in config.backends
    ]
    backends = [
        Backend(
            group=b.group_name,
            region=b.region,
            balancing_mode=b.balancing_mode.upper(),
            max_rate_per_instance=b.max_rate_per_instance,
            max_utilization=b.max_utilization,
            capacity_scaler=b.capacity_scaler,
        )
        for b in config.backends
    ]

    return ResourceSet(
        firewall=FirewallRule(
            name=config.firewall_rule_name,
            allowed=[f'tcp:{config.health_check_port}'],
            source_ranges=list(config.health_check_ranges),
            target_tags=[config.health_check_tag],
            network=config.network,
        ),
        router=Router(config.router_name, config.nat_region, config.network),
        nat=Nat(config.nat_name, config.router_name, config.nat_region),
        image=source_image(config),
        health_check=HealthCheck(config.health_check_name, port=config.health_check_port),
        template=InstanceTemplate(
            name=config.template_name,
            source_image=config.image_name,
            machine_type=config.machine_type,
            tags=[config.health_check_tag],
        ),
        groups=groups,
        backend_service=BackendService(config.backend_service_name, config.health_check_name, backends),
        url_map=UrlMap(config.url_map_name, config.backend_service_name),
        proxy=TargetHttpProxy(config.proxy_name, config.url_map_name),
        forwarding_rules=[
            ForwardingRule(config.forwarding_rule_ipv4, config.proxy_name, ip_version='IPV4'),
            ForwardingRule(config.forwarding_rule_ipv6, config.proxy_name, ip_version='IPV6'),
        ],
    )


def group_is_stable(api, group):
    state = api.describe(group)
    return bool(state and state.get('status', {}).get('isStable'))


def wait_for_groups(api, config, groups, poller=None):
    """Block until every managed instance group reports a stable state."""
    poller = poller or Poller(config.group_stable_interval, config.group_stable_attempts)
    for group in groups:
        poller.wait_until(lambda g=group: group_is_stable(api, g), f"instance group {group.name}")


def build_steps(api, config, poller=None):
    """The setup pipeline. Cleanup runs the same list backwards."""
    resources = build_descriptors(config)
    steps = [
        resource_step(api, resources.firewall),
        resource_step(api, resources.router),
        resource_step(api, resources.nat),
        Step(
            name=resources.image.name,
            create=lambda: bake_image(api, config, poller),
            delete=lambda: api.delete(resources.image),
        ),
        resource_step(api, resources.health_check),
        resource_step(api, resources.template),
    ]
    steps += [resource_step(api, group) for group in resources.groups]
    steps.append(Step(
        name='wait-instance-groups',
        create=lambda: wait_for_groups(api, config, resources.groups, poller),
    ))
    steps += [
        resource_step(api, resources.backend_service),
        resource_step(api, resources.url_map),
        resource_step(api, resources.proxy),
    ]
    steps += [resource_step(api, rule) for rule in resources.forwarding_rules]
    return steps


def get_lb_addresses(api, config):
    """(ipv4, ipv6) of the global forwarding rules, '' for any that is missing."""
    resources = build_descriptors(config)
    addresses = []
    for rule in resources.forwarding_rules:
        state = api.describe(rule)
        addresses.append(state.get('IPAddress', '') if state else '')
    return tuple(addresses)


def wait_until_serving(config, address, poller=None, http_get=None):
    """Unbounded wait for the first page that looks like our web server."""
    poller = poller or Poller(config.readiness_interval)
    kwargs = {'http_get': http_get} if http_get else {}
    return poller.wait_for(
        lambda: serves_marker(f"http://{address}/", config.readiness_marker, config.http_timeout, **kwargs),
        f"load balancer at {address}",
    )


def print_report(results):
    for result in results:
        print(f"  {result.name:<28} {result.status.value}")


def setup(api, config, enable_apis=True):
    if enable_apis:
        api.enable_services(REQUIRED_SERVICES)
    results = Orchestrator(build_steps(api, config)).provision()
    return results, get_lb_addresses(api, config)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Create the load balancer lab: firewall, NAT, image, "
                                                 "autoscaling instance groups and a global HTTP load balancer.")
    parser.add_argument('--config', help='YAML file overriding the default lab settings')
    parser.add_argument('--skip-apis', action='store_true', help='do not enable compute/logging APIs')
    parser.add_argument('--wait-ready', action='store_true',
                        help='block until the load balancer serves its first page')
    parser.add_argument('-v', '--verbose', action='store_true')
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = load_config(args.config)
        api = GcloudCompute()
        config = resolve_project(config, api)
        api.project = config.project

        print("=== Google Cloud Application Load Balancer Setup ===")
        print(f"Project ID: {config.project}")
        for backend in config.backends:
            print(f"Backend: {backend.group_name} in {backend.region}")
        print()

        results, (ipv4, ipv6) = setup(api, config, enable_apis=not args.skip_apis)
    except LabError as e:
        logger.error(str(e))
        logger.error("Fix the problem and re-run setup (finished steps are skipped), "
                     "or run the cleanup script to remove what was created.")
        return 1

    print("\n------------------------------------------------")
    print("SETUP COMPLETE!")
    print_report(results)
    print(f"Load Balancer IPv4: {ipv4}")
    print(f"Load Balancer IPv6: {ipv6}")
    print("------------------------------------------------")

    if args.wait_ready and ipv4:
        try:
            wait_until_serving(config, ipv4)
        except KeyboardInterrupt:
            print("\nStopped waiting.")
            return 0
        print(f"Load balancer is serving: http://{ipv4}/")
    else:
        print("Wait 5-10 minutes for the load balancer to be fully ready.")
        print(f"Test it with: curl http://{ipv4}")

    created = sum(1 for r in results if r.status == StepStatus.CREATED)
    print(f"{created} step(s) created resources. Run the stress test next, and the cleanup script when done.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
