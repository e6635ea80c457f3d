import requests

from lab_errors import GcloudError, ResourceExistsError, ResourceNotFoundError

APACHE_PAGE = "<html><title>Apache2 Debian Default Page: It works</title></html>"

AB_REPORT = """\
This is ApacheBench, Version 2.3 <$Revision: 1903618 $>
Benchmarking 34.120.10.20 (be patient)

Server Software:        Apache/2.4.56
Server Hostname:        34.120.10.20
Server Port:            80

Document Path:          /
Document Length:        10701 bytes

Concurrency Level:      1000
Time taken for tests:   405.123 seconds
Complete requests:      500000
Failed requests:        0
Non-2xx responses:      17
Total transferred:      5485000000 bytes
HTML transferred:       5350500000 bytes
Requests per second:    1234.19 [#/sec] (mean)
Time per request:       810.246 [ms] (mean)
Time per request:       0.810 [ms] (mean, across all concurrent requests)
Transfer rate:          13221.87 [Kbytes/sec] received
"""


class FakeCompute:
    """In-memory stand-in for GcloudCompute.

    Records every call in order and refuses to create a resource whose
    references do not exist yet, the way the real API would.
    """

    def __init__(self):
        self.project = 'test-project'
        self.calls = []
        self.existing = {}
        self.states = {}
        self.created = []
        self.deleted = []
        self.fail_create = {}
        self.fail_delete = {}
        self.ssh_commands = []
        self.ssh_outputs = {}
        self.listings = {}
        self.managed = {}
        self.health = []
        self.services = []
        self.zonal_deleted = []

    def seed(self, *resources):
        for resource in resources:
            self.existing[resource.key] = resource

    def current_project(self):
        return self.project

    def enable_services(self, services):
        self.services.extend(services)

    def create(self, resource):
        self.calls.append(('create', resource.kind, resource.name))
        if resource.name in self.fail_create:
            raise self.fail_create[resource.name]
        if resource.key in self.existing:
            raise ResourceExistsError(f"The resource '{resource.name}' already exists")
        for ref in resource.references():
            if ref not in self.existing:
                raise GcloudError(f"{resource} references {ref[0]} {ref[1]} which does not exist")
        self.existing[resource.key] = resource
        self.created.append(resource)

    def delete(self, resource):
        self.calls.append(('delete', resource.kind, resource.name))
        if resource.name in self.fail_delete:
            raise self.fail_delete[resource.name]
        if resource.key not in self.existing:
            raise ResourceNotFoundError(f"The resource '{resource.name}' was not found")
        del self.existing[resource.key]
        self.states.pop(resource.key, None)
        self.deleted.append(resource)

    def describe(self, resource):
        if resource.key not in self.existing:
            return None
        if resource.key in self.states:
            return self.states[resource.key]
        return self._default_state(resource)

    def _default_state(self, resource):
        if resource.kind == 'instance-group':
            return {'name': resource.name, 'targetSize': resource.size,
                    'status': {'isStable': True, 'versionTarget': {'isReached': True}}}
        if resource.kind == 'instance':
            return {'name': resource.name, 'status': 'RUNNING'}
        if resource.kind == 'forwarding-rule':
            return {'name': resource.name,
                    'IPAddress': '34.120.10.20' if resource.ip_version == 'IPV4' else '2600:1901:0:1::'}
        if resource.kind == 'backend-service':
            return {'name': resource.name, 'protocol': 'HTTP', 'timeoutSec': 30,
                    'healthChecks': [f'https://compute/projects/p/global/healthChecks/{resource.health_check}'],
                    'logConfig': {'enable': True}}
        return {'name': resource.name}

    def stop_instance(self, instance):
        self.calls.append(('stop', instance.kind, instance.name))
        self.states[instance.key] = {'name': instance.name, 'status': 'TERMINATED'}

    def start_instance(self, instance):
        self.calls.append(('start', instance.kind, instance.name))
        self.states[instance.key] = {'name': instance.name, 'status': 'RUNNING'}

    def ssh(self, instance, command):
        self.calls.append(('ssh', instance.kind, instance.name))
        self.ssh_commands.append((instance.name, command))
        for marker, output in self.ssh_outputs.items():
            if marker in command:
                return output
        return ''

    def list_managed_instances(self, group):
        return self.managed.get(group.name, [])

    def backend_health(self, service):
        if isinstance(self.health, Exception):
            raise self.health
        return self.health

    def list_resources(self, collection, filter_expr=None, extra=()):
        self.calls.append(('list', collection, filter_expr))
        return self.listings.get(collection, [])

    def delete_zonal(self, collection, name, zone):
        self.calls.append(('delete-zonal', collection, name))
        self.zonal_deleted.append((collection, name, zone))

    def names(self, op):
        return [name for kind_op, _, name in self.calls if kind_op == op]


class FakeResponse:
    def __init__(self, status_code=200, text=APACHE_PAGE):
        self.status_code = status_code
        self.text = text


class FakeHttp:
    """requests.get replacement: fails `failures` times, then serves the page."""

    def __init__(self, failures=0, status_code=200, text=APACHE_PAGE):
        self.failures = failures
        self.status_code = status_code
        self.text = text
        self.urls = []

    def __call__(self, url, timeout=None):
        self.urls.append(url)
        if len(self.urls) <= self.failures:
            raise requests.ConnectionError("connection refused")
        return FakeResponse(self.status_code, self.text)
