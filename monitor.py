import argparse
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

import requests

from gcloud_cli import GcloudCompute, basename
from gcp_lb import build_descriptors, get_lb_addresses
from lab_config import configure_logging, load_config, resolve_project
from lab_errors import GcloudError, LabError
from readiness import Poller, ProbeResult, probe

logger = logging.getLogger(__name__)

CLEAR_SCREEN = "\033[2J\033[H"


@dataclass
class InstanceRow:
    name: str
    status: str
    action: str
    last_error: str = ''


@dataclass
class GroupSnapshot:
    name: str
    region: str
    found: bool
    target_size: int = 0
    is_stable: bool = False
    version_reached: bool = False
    instances: List[InstanceRow] = field(default_factory=list)


@dataclass
class HealthRow:
    instance: str
    state: str
    port: Optional[int] = None


@dataclass
class LoadBalancerSnapshot:
    ipv4: str
    ipv6: str
    probe: Optional[ProbeResult] = None
    backend_service: Optional[dict] = None
    health: List[HealthRow] = field(default_factory=list)
    health_available: bool = False


@dataclass
class ConnectivityReport:
    ipv4: str
    first: ProbeResult
    samples: List[ProbeResult]
    marker: str
    marker_found: bool


def _instance_row(item):
    errors = item.get('lastAttempt', {}).get('errors', {}).get('errors', [])
    return InstanceRow(
        name=basename(item.get('instance') or item.get('name')),
        status=item.get('instanceStatus', 'UNKNOWN'),
        action=item.get('currentAction', ''),
        last_error=errors[0].get('message', '') if errors else '',
    )


class StatusReporter:
    """Reads the current state of the lab resources. Nothing here mutates them."""

    def __init__(self, api, config, http_get=requests.get):
        self.api = api
        self.config = config
        self.http_get = http_get
        self.resources = build_descriptors(config)

    def url(self, address):
        return f"http://{address}/"

    def probe(self, address):
        return probe(self.url(address), self.config.http_timeout, self.http_get)

    def load_balancer(self):
        ipv4, ipv6 = get_lb_addresses(self.api, self.config)
        snapshot = LoadBalancerSnapshot(ipv4, ipv6)
        if ipv4:
            snapshot.probe = self.probe(ipv4)

        service = self.resources.backend_service
        state = self.api.describe(service)
        if state is None:
            return snapshot

        snapshot.backend_service = {
            'name': state.get('name', service.name),
            'protocol': state.get('protocol', ''),
            'health_check': basename((state.get('healthChecks') or [''])[0]),
            'timeout': state.get('timeoutSec', ''),
            'logging': state.get('logConfig', {}).get('enable', False),
        }
        try:
            for backend in self.api.backend_health(service):
                for entry in backend.get('status', {}).get('healthStatus', []):
                    snapshot.health.append(HealthRow(
                        instance=basename(entry.get('instance')),
                        state=entry.get('healthState', 'UNKNOWN'),
                        port=entry.get('port'),
                    ))
            snapshot.health_available = True
        except GcloudError as e:
            # Health data lags behind the backend service for a few minutes
            logger.debug(f"Backend health not available: {e}")
        return snapshot

    def instance_group(self, group):
        state = self.api.describe(group)
        if state is None:
            return GroupSnapshot(group.name, group.region, found=False)
        status = state.get('status', {})
        return GroupSnapshot(
            name=group.name,
            region=group.region,
            found=True,
            target_size=state.get('targetSize', 0),
            is_stable=bool(status.get('isStable')),
            version_reached=bool(status.get('versionTarget', {}).get('isReached')),
            instances=[_instance_row(i) for i in self.api.list_managed_instances(group)],
        )

    def instance_groups(self):
        return [self.instance_group(g) for g in self.resources.groups]

    def target_sizes(self):
        sizes = {}
        for group in self.resources.groups:
            try:
                state = self.api.describe(group)
            except GcloudError as e:
                # One flaky describe must not end a long-running watch
                logger.debug(f"Could not describe {group.name}: {e}")
                state = None
            sizes[group.name] = state.get('targetSize', 0) if state else 0
        return sizes

    def connectivity_test(self, ipv4, count=10, spacing=1.0):
        first = self.probe(ipv4)
        samples = []
        Poller(spacing, max_attempts=count).repeat(lambda: samples.append(self.probe(ipv4)))
        content = self.probe(ipv4)
        marker = self.config.readiness_marker
        return ConnectivityReport(ipv4, first, samples, marker, marker in content.body)

    def watch(self, ipv4, poller=None, out=print):
        """Re-render a short summary every monitor_interval until the poller is stopped."""
        poller = poller or Poller(self.config.monitor_interval)

        def frame():
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
            out(render_watch_frame(timestamp, ipv4, self.probe(ipv4), self.target_sizes(), self.resources.groups))

        return poller.repeat(frame)


# Rendering

def render_probe(result):
    mark = '✓' if result.ok else '✗'
    return f"{mark} HTTP {result.status_code:03d} - Response time: {result.elapsed:.3f}s"


def render_load_balancer(snapshot):
    lines = ["=== Load Balancer Status ==="]
    lines.append(f"IPv4 Address: {snapshot.ipv4 or 'Not found'}")
    lines.append(f"IPv6 Address: {snapshot.ipv6 or 'Not found'}")
    lines.append("")
    lines.append("Connectivity Test:")
    lines.append(render_probe(snapshot.probe) if snapshot.probe else "✗ Load balancer IP not found")
    lines.append("")
    lines.append("Backend Service Status:")
    service = snapshot.backend_service
    if service is None:
        lines.append("Backend service not found")
        return "\n".join(lines)

    lines.append(f"{'NAME':<16} {'PROTOCOL':<9} {'HEALTH_CHECK':<20} {'TIMEOUT':<8} LOGGING")
    lines.append(f"{service['name']:<16} {service['protocol']:<9} {service['health_check']:<20} "
                 f"{str(service['timeout']):<8} {service['logging']}")
    lines.append("")
    lines.append("Backend Health Status:")
    if not snapshot.health_available:
        lines.append("Health status not available yet")
    else:
        lines.append(f"{'INSTANCE':<32} {'HEALTH_STATE':<14} PORT")
        for row in snapshot.health:
            lines.append(f"{row.instance:<32} {row.state:<14} {row.port if row.port is not None else ''}")
    return "\n".join(lines)


def render_instance_groups(groups):
    lines = ["=== Instance Groups Status ==="]
    for group in groups:
        lines.append(f"{group.name.upper()} (Region: {group.region}):")
        if not group.found:
            lines.append(f"{group.name} not found")
            lines.append("")
            continue
        lines.append(f"{'NAME':<16} {'TARGET_SIZE':<12} {'STABLE':<7} VERSION_REACHED")
        lines.append(f"{group.name:<16} {group.target_size:<12} {str(group.is_stable):<7} {group.version_reached}")
        lines.append(f"Instances in {group.name}:")
        lines.append(f"{'INSTANCE_NAME':<28} {'STATUS':<12} {'ACTION':<10} LAST_ERROR")
        for row in group.instances:
            lines.append(f"{row.name:<28} {row.status:<12} {row.action:<10} {row.last_error}")
        lines.append("")
    return "\n".join(lines).rstrip()


def render_connectivity(report):
    lines = ["=== Load Balancer Connectivity Tests ===",
             f"Testing IPv4 endpoint: {report.ipv4}",
             f"Basic connectivity: {render_probe(report.first)}",
             "",
             f"Running multiple requests ({len(report.samples)} requests):"]
    lines += [f"Request {i}: {sample}" for i, sample in enumerate(report.samples, 1)]
    lines.append("")
    lines.append("Response content check:")
    if report.marker_found:
        lines.append(f"✓ {report.marker} default page detected")
    else:
        lines.append("✗ Unexpected response content")
    return "\n".join(lines)


def render_watch_frame(timestamp, ipv4, result, sizes, groups):
    lines = [f"=== Load Balancer Monitoring - {timestamp} ===", "",
             f"Load Balancer ({ipv4}):", render_probe(result), "",
             "Instance Groups Summary:"]
    for group in groups:
        lines.append(f"{group.name} ({group.region}): {sizes.get(group.name, 0)} instances")
    lines.append("")
    lines.append("Press Ctrl+C to stop monitoring")
    return CLEAR_SCREEN + "\n".join(lines)


def full_status(reporter):
    return render_load_balancer(reporter.load_balancer()) + "\n\n" + render_instance_groups(reporter.instance_groups())


def build_parser():
    parser = argparse.ArgumentParser(description="Google Cloud Load Balancer Monitoring Script")
    views = parser.add_mutually_exclusive_group()
    views.add_argument('-s', '--status', dest='view', action='store_const', const='status',
                       help='show current status of all components (default)')
    views.add_argument('-l', '--loadbalancer', dest='view', action='store_const', const='loadbalancer',
                       help='show load balancer details only')
    views.add_argument('-i', '--instances', dest='view', action='store_const', const='instances',
                       help='show instance groups details only')
    views.add_argument('-m', '--monitor', dest='view', action='store_const', const='monitor',
                       help='start continuous monitoring')
    views.add_argument('-t', '--test', dest='view', action='store_const', const='test',
                       help='run connectivity tests')
    parser.add_argument('--config', help='YAML file overriding the default lab settings')
    parser.add_argument('-v', '--verbose', action='store_true')
    return parser


def run_view(view, reporter, out=print):
    if view == 'loadbalancer':
        out(render_load_balancer(reporter.load_balancer()))
        return 0
    if view == 'instances':
        out(render_instance_groups(reporter.instance_groups()))
        return 0
    if view in ('monitor', 'test'):
        ipv4, _ = get_lb_addresses(reporter.api, reporter.config)
        if not ipv4:
            logger.error("Load balancer IPv4 address not found. Exiting.")
            return 1
        if view == 'test':
            out(render_connectivity(reporter.connectivity_test(ipv4)))
            return 0
        logger.info("Starting continuous monitoring (press Ctrl+C to stop)")
        try:
            reporter.watch(ipv4, out=out)
        except KeyboardInterrupt:
            out("\nMonitoring stopped.")
        return 0

    out(full_status(reporter))
    return 0


def main(argv=None):
    # Unknown flags make argparse print usage and exit with status 2
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = load_config(args.config)
        api = GcloudCompute()
        config = resolve_project(config, api)
        api.project = config.project
        return run_view(args.view or 'status', StatusReporter(api, config))
    except LabError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
