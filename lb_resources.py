"""Descriptors for every cloud resource the lab creates.

Each descriptor renders its own gcloud command lines and lists the resources
it references by name, so whoever executes them can check creation order.
"""

from dataclasses import dataclass, field
from typing import List, Optional


class Resource:
    kind = ''
    collection = ()

    def scope_flags(self):
        return []

    def create_flags(self):
        return []

    def create_commands(self):
        return [[*self.collection, 'create', self.name, *self.create_flags(), *self.scope_flags()]]

    def delete_command(self):
        return [*self.collection, 'delete', self.name, *self.scope_flags()]

    def describe_command(self):
        return [*self.collection, 'describe', self.name, *self.scope_flags()]

    def references(self):
        """(kind, name) pairs that must exist before this resource is created."""
        return []

    @property
    def key(self):
        return (self.kind, self.name)

    def __str__(self):
        return f"{self.kind} {self.name}"


@dataclass
class FirewallRule(Resource):
    name: str
    allowed: List[str]
    source_ranges: List[str]
    target_tags: List[str]
    network: str = 'default'
    direction: str = 'INGRESS'
    priority: int = 1000

    kind = 'firewall-rule'
    collection = ('compute', 'firewall-rules')

    def create_flags(self):
        return [
            f'--direction={self.direction}',
            f'--priority={self.priority}',
            f'--network={self.network}',
            '--action=ALLOW',
            f"--rules={','.join(self.allowed)}",
            f"--source-ranges={','.join(self.source_ranges)}",
            f"--target-tags={','.join(self.target_tags)}",
        ]


@dataclass
class Router(Resource):
    name: str
    region: str
    network: str = 'default'

    kind = 'router'
    collection = ('compute', 'routers')

    def scope_flags(self):
        return [f'--region={self.region}']

    def create_flags(self):
        return [f'--network={self.network}']


@dataclass
class Nat(Resource):
    name: str
    router: str
    region: str

    kind = 'nat'
    collection = ('compute', 'routers', 'nats')

    def scope_flags(self):
        return [f'--router={self.router}', f'--region={self.region}']

    def create_flags(self):
        return ['--nat-all-subnet-ip-ranges', '--auto-allocate-nat-external-ips']

    def references(self):
        return [('router', self.router)]


@dataclass
class Instance(Resource):
    name: str
    zone: str
    machine_type: str
    image: str
    image_project: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    external_ip: bool = True
    shielded_vm: bool = False
    boot_disk_size: str = '10GB'
    boot_disk_type: str = 'pd-balanced'

    kind = 'instance'
    collection = ('compute', 'instances')

    def scope_flags(self):
        return [f'--zone={self.zone}']

    def create_flags(self):
        nic = 'network-tier=PREMIUM,subnet=default'
        if not self.external_ip:
            nic += ',no-address'
        flags = [
            f'--machine-type={self.machine_type}',
            f'--network-interface={nic}',
            '--maintenance-policy=MIGRATE',
            '--provisioning-model=STANDARD',
            f'--image={self.image}',
            f'--boot-disk-size={self.boot_disk_size}',
            f'--boot-disk-type={self.boot_disk_type}',
            f'--boot-disk-device-name={self.name}',
        ]
        if self.image_project:
            flags.append(f'--image-project={self.image_project}')
        if self.tags:
            flags.append(f"--tags={','.join(self.tags)}")
        if self.shielded_vm:
            flags += ['--no-shielded-secure-boot', '--shielded-vtpm', '--shielded-integrity-monitoring']
        return flags

    def references(self):
        # Public images are not ours to create
        if self.image_project:
            return []
        return [('image', self.image)]


@dataclass
class SourceImage(Resource):
    name: str
    source_disk: str
    source_disk_zone: str
    family: Optional[str] = None

    kind = 'image'
    collection = ('compute', 'images')

    def create_flags(self):
        flags = [f'--source-disk={self.source_disk}', f'--source-disk-zone={self.source_disk_zone}']
        if self.family:
            flags.append(f'--family={self.family}')
        return flags

    def references(self):
        # The disk belongs to the temporary VM of the same name
        return [('instance', self.source_disk)]


@dataclass
class HealthCheck(Resource):
    name: str
    port: int = 80
    protocol: str = 'tcp'

    kind = 'health-check'
    collection = ('compute', 'health-checks')

    def create_commands(self):
        return [[*self.collection, 'create', self.protocol, self.name, f'--port={self.port}']]


@dataclass
class InstanceTemplate(Resource):
    name: str
    source_image: str
    machine_type: str
    tags: List[str] = field(default_factory=list)
    boot_disk_size: str = '10GB'
    boot_disk_type: str = 'pd-balanced'

    kind = 'instance-template'
    collection = ('compute', 'instance-templates')

    def create_flags(self):
        flags = [
            f'--machine-type={self.machine_type}',
            '--network-interface=network-tier=PREMIUM,subnet=default,no-address',
            '--maintenance-policy=MIGRATE',
            '--provisioning-model=STANDARD',
            f'--image={self.source_image}',
            f'--boot-disk-size={self.boot_disk_size}',
            f'--boot-disk-type={self.boot_disk_type}',
        ]
        if self.tags:
            flags.append(f"--tags={','.join(self.tags)}")
        return flags

    def references(self):
        return [('image', self.source_image)]


@dataclass
class ManagedInstanceGroup(Resource):
    name: str
    template: str
    region: str
    health_check: str
    size: int = 1
    min_replicas: int = 1
    max_replicas: int = 2
    target_utilization: float = 0.8
    cool_down_period: int = 60
    initial_delay: int = 60

    kind = 'instance-group'
    collection = ('compute', 'instance-groups', 'managed')

    def scope_flags(self):
        return [f'--region={self.region}']

    def create_flags(self):
        return [f'--template={self.template}', f'--size={self.size}']

    def create_commands(self):
        # The group itself, then its autoscaling policy, then autohealing
        return super().create_commands() + [
            [*self.collection, 'set-autoscaling', self.name, *self.scope_flags(),
             f'--max-num-replicas={self.max_replicas}',
             f'--min-num-replicas={self.min_replicas}',
             f'--target-load-balancing-utilization={self.target_utilization}',
             f'--cool-down-period={self.cool_down_period}s'],
            [*self.collection, 'set-autohealing', self.name, *self.scope_flags(),
             f'--health-check={self.health_check}',
             f'--initial-delay={self.initial_delay}s'],
        ]

    def list_instances_command(self):
        return [*self.collection, 'list-instances', self.name, *self.scope_flags()]

    def references(self):
        return [('instance-template', self.template), ('health-check', self.health_check)]


@dataclass
class Backend:
    group: str
    region: str
    balancing_mode: str = 'UTILIZATION'
    max_rate_per_instance: Optional[int] = None
    max_utilization: Optional[float] = None
    capacity_scaler: float = 1.0

    def add_flags(self):
        flags = [
            f'--instance-group={self.group}',
            f'--instance-group-region={self.region}',
            f'--balancing-mode={self.balancing_mode}',
        ]
        if self.max_rate_per_instance is not None:
            flags.append(f'--max-rate-per-instance={self.max_rate_per_instance}')
        if self.max_utilization is not None:
            flags.append(f'--max-utilization={self.max_utilization}')
        flags.append(f'--capacity-scaler={self.capacity_scaler}')
        return flags


@dataclass
class BackendService(Resource):
    name: str
    health_check: str
    backends: List[Backend] = field(default_factory=list)
    protocol: str = 'HTTP'
    port_name: str = 'http'
    enable_logging: bool = True
    logging_sample_rate: float = 1.0

    kind = 'backend-service'
    collection = ('compute', 'backend-services')

    def scope_flags(self):
        return ['--global']

    def create_flags(self):
        flags = [
            f'--protocol={self.protocol}',
            f'--port-name={self.port_name}',
            f'--health-checks={self.health_check}',
        ]
        if self.enable_logging:
            flags += ['--enable-logging', f'--logging-sample-rate={self.logging_sample_rate}']
        return flags

    def create_commands(self):
        commands = super().create_commands()
        for backend in self.backends:
            commands.append([*self.collection, 'add-backend', self.name, *backend.add_flags(), *self.scope_flags()])
        return commands

    def get_health_command(self):
        return [*self.collection, 'get-health', self.name, *self.scope_flags()]

    def references(self):
        return [('health-check', self.health_check)] + [('instance-group', b.group) for b in self.backends]


@dataclass
class UrlMap(Resource):
    name: str
    default_service: str

    kind = 'url-map'
    collection = ('compute', 'url-maps')

    def create_flags(self):
        return [f'--default-service={self.default_service}']

    def references(self):
        return [('backend-service', self.default_service)]


@dataclass
class TargetHttpProxy(Resource):
    name: str
    url_map: str

    kind = 'target-http-proxy'
    collection = ('compute', 'target-http-proxies')

    def create_flags(self):
        return [f'--url-map={self.url_map}']

    def references(self):
        return [('url-map', self.url_map)]


@dataclass
class ForwardingRule(Resource):
    name: str
    target_proxy: str
    port: int = 80
    ip_version: str = 'IPV4'

    kind = 'forwarding-rule'
    collection = ('compute', 'forwarding-rules')

    def scope_flags(self):
        return ['--global']

    def create_flags(self):
        flags = [f'--target-http-proxy={self.target_proxy}', f'--ports={self.port}']
        if self.ip_version != 'IPV4':
            flags.append(f'--ip-version={self.ip_version}')
        return flags

    def references(self):
        return [('target-http-proxy', self.target_proxy)]
