import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import List, Optional

import yaml

from lab_errors import ConfigError

# Let's start with configuration

CONFIG_ENV_VAR = 'LB_LAB_CONFIG'
PROJECT_ENV_VARS = ('GCP_PROJECT', 'CLOUDSDK_CORE_PROJECT')

# Google's health check probers live in these two ranges
HEALTH_CHECK_SOURCE_RANGES = ['130.211.0.0/22', '35.191.0.0/16']


@dataclass
class BackendLocation:
    """One regional managed instance group behind the backend service."""
    group_name: str
    region: str
    zone: str
    balancing_mode: str = 'UTILIZATION'
    max_rate_per_instance: Optional[int] = None
    max_utilization: Optional[float] = None
    capacity_scaler: float = 1.0


def default_backends():
    return [
        BackendLocation('us-1-mig', 'us-central1', 'us-central1-c',
                        balancing_mode='RATE', max_rate_per_instance=50),
        BackendLocation('notus-1-mig', 'europe-west1', 'europe-west1-c',
                        balancing_mode='UTILIZATION', max_utilization=0.8),
    ]


@dataclass
class LabConfig:
    project: str = ''
    network: str = 'default'
    backends: List[BackendLocation] = field(default_factory=default_backends)

    # Load generator host lives away from both backends
    stress_region: str = 'us-east1'
    stress_zone: str = 'us-east1-b'
    stress_machine_type: str = 'e2-medium'
    stress_vm_name: str = 'stress-test'

    # Firewall / NAT
    firewall_rule_name: str = 'fw-allow-health-checks'
    health_check_tag: str = 'allow-health-checks'
    health_check_ranges: List[str] = field(default_factory=lambda: list(HEALTH_CHECK_SOURCE_RANGES))
    router_name: str = 'nat-router-us1'
    nat_name: str = 'nat-config'

    # Image baking
    webserver_vm_name: str = 'webserver'
    machine_type: str = 'e2-micro'
    base_image: str = 'debian-11-bullseye-v20231115'
    base_image_project: str = 'debian-cloud'
    image_name: str = 'mywebserver'
    image_family: str = 'webserver-family'

    # Backends
    health_check_name: str = 'http-health-check'
    health_check_port: int = 80
    template_name: str = 'mywebserver-template'
    group_size: int = 1
    min_replicas: int = 1
    max_replicas: int = 2
    target_utilization: float = 0.8
    cool_down_period: int = 60
    autohealing_initial_delay: int = 60

    # Frontend
    backend_service_name: str = 'http-backend'
    url_map_name: str = 'http-lb'
    proxy_name: str = 'http-lb-proxy'
    forwarding_rule_ipv4: str = 'http-lb-ipv4'
    forwarding_rule_ipv6: str = 'http-lb-ipv6'

    # Polling
    readiness_marker: str = 'Apache'
    readiness_attempts: int = 30
    readiness_interval: float = 10.0
    instance_stop_attempts: int = 30
    instance_stop_interval: float = 5.0
    group_stable_attempts: int = 30
    group_stable_interval: float = 10.0
    monitor_interval: float = 5.0
    http_timeout: float = 5.0

    # Stress test
    benchmark_requests: int = 500000
    benchmark_concurrency: int = 1000

    # Leftovers the cleanup sweep offers to delete
    instance_sweep_pattern: str = '(webserver|stress|mig)'
    disk_sweep_pattern: str = '(webserver|stress)'

    @property
    def nat_region(self):
        """The NAT router sits in the first backend's region."""
        return self.backends[0].region

    @property
    def image_zone(self):
        return self.backends[0].zone


def validate(config):
    if not config.backends:
        raise ConfigError("At least one backend location is required")
    names = [b.group_name for b in config.backends]
    if len(set(names)) != len(names):
        raise ConfigError(f"Duplicate instance group names: {names}")
    for backend in config.backends:
        mode = backend.balancing_mode.upper()
        if mode not in ('RATE', 'UTILIZATION'):
            raise ConfigError(f"Unknown balancing mode '{backend.balancing_mode}' for {backend.group_name}")
        if mode == 'RATE' and not backend.max_rate_per_instance:
            raise ConfigError(f"{backend.group_name}: RATE balancing needs max_rate_per_instance")
    if config.min_replicas < 1 or config.max_replicas < config.min_replicas:
        raise ConfigError(f"Invalid replica bounds {config.min_replicas}..{config.max_replicas}")
    if not 0 < config.target_utilization <= 1:
        raise ConfigError(f"target_utilization must be in (0, 1], got {config.target_utilization}")
    if config.benchmark_requests < 1 or config.benchmark_concurrency < 1:
        raise ConfigError("Benchmark request count and concurrency must be positive")
    if config.benchmark_concurrency > config.benchmark_requests:
        raise ConfigError("Benchmark concurrency cannot exceed the request count")
    return config


def _from_mapping(data):
    known = {f.name for f in fields(LabConfig)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

    values = dict(data)
    if 'backends' in values:
        try:
            values['backends'] = [BackendLocation(**b) for b in values['backends']]
        except TypeError as e:
            raise ConfigError(f"Invalid backend entry: {e}") from e
    return LabConfig(**values)


def load_config(path=None, env=None):
    """Build the lab configuration.

    Order of precedence: defaults, then the YAML file (``path`` or the
    LB_LAB_CONFIG variable), then the project from the environment.
    """
    env = os.environ if env is None else env
    path = path or env.get(CONFIG_ENV_VAR)

    if path:
        try:
            with open(path, "r") as file:
                data = yaml.safe_load(file) or {}
        except OSError as e:
            raise ConfigError(f"Cannot read config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        config = _from_mapping(data)
    else:
        config = LabConfig()

    for var in PROJECT_ENV_VARS:
        if env.get(var):
            config = replace(config, project=env[var])
            break

    return validate(config)


def resolve_project(config, api):
    """Fill in the project from gcloud's own configuration when nothing set it."""
    if config.project:
        return config
    project = api.current_project()
    if not project:
        raise ConfigError("No project configured. Set GCP_PROJECT or run 'gcloud config set project'.")
    return replace(config, project=project)


def configure_logging(verbose=False):
    logging.basicConfig(
        format="{asctime} - {levelname} - {message}",
        style="{",
        datefmt="%Y-%m-%d %H:%M:%S",
        level=logging.DEBUG if verbose else logging.INFO,
    )
