import json
import logging
import subprocess

from lab_errors import GcloudError, ResourceExistsError, ResourceNotFoundError

logger = logging.getLogger(__name__)

GCLOUD = 'gcloud'

# Fragments of gcloud's stderr we rely on to classify failures
ALREADY_EXISTS_MARKERS = ('already exists',)
NOT_FOUND_MARKERS = ('was not found', 'not found', 'notfound')
# add-backend on a group that is already a backend of the service
ALREADY_APPLIED_MARKERS = ('already in use',)


def run_command(args):
    """Run a command, capturing its output. Never raises on a non-zero exit."""
    logger.debug(f"Running: {' '.join(args)}")
    return subprocess.run(args, capture_output=True, text=True, check=False)


def classify_error(command, returncode, stderr):
    """Turn a failed gcloud call into the matching exception (not raised)."""
    text = (stderr or '').lower()
    message = (stderr or '').strip() or f"gcloud exited with status {returncode}"
    if any(marker in text for marker in ALREADY_EXISTS_MARKERS):
        return ResourceExistsError(message, command, returncode, stderr)
    if any(marker in text for marker in NOT_FOUND_MARKERS):
        return ResourceNotFoundError(message, command, returncode, stderr)
    return GcloudError(message, command, returncode, stderr)


def already_applied(error):
    """True when a settings command failed only because it was run before (e.g. add-backend)."""
    text = (error.stderr or '').lower()
    return isinstance(error, ResourceExistsError) or any(m in text for m in ALREADY_APPLIED_MARKERS)


def basename(url):
    """gcloud reports most references as full resource URLs."""
    if not url:
        return ''
    return str(url).rstrip('/').rsplit('/', 1)[-1]


class GcloudCompute:
    """Thin wrapper around the gcloud CLI for the resources in lb_resources."""

    def __init__(self, project=None, runner=run_command, gcloud=GCLOUD):
        self.project = project
        self.runner = runner
        self.gcloud = gcloud

    def run(self, args):
        cmd = [self.gcloud] + list(args)
        if self.project:
            cmd.append(f'--project={self.project}')
        try:
            result = self.runner(cmd)
        except FileNotFoundError as e:
            raise GcloudError("gcloud CLI not found. Please install the Google Cloud SDK.", cmd) from e

        if result.returncode != 0:
            raise classify_error(cmd, result.returncode, result.stderr)
        return result.stdout

    def run_json(self, args):
        output = self.run(list(args) + ['--format=json'])
        if not output.strip():
            return None
        try:
            return json.loads(output)
        except ValueError as e:
            raise GcloudError(f"Unparseable gcloud output for {' '.join(args)}: {e}", args) from e

    def current_project(self):
        output = self.run(['config', 'get-value', 'project'])
        return output.strip()

    def enable_services(self, services):
        for service in services:
            logger.info(f"Enabling {service}...")
            self.run(['services', 'enable', service])

    # Resource lifecycle

    def create(self, resource):
        """Run every create command of a resource.

        Only the first command creates the resource; the rest attach settings
        (autoscaling, backends...). If the resource is already there the
        settings are still applied, so a half-finished earlier run gets
        completed, and ResourceExistsError is raised afterwards.
        """
        logger.info(f"Creating {resource}...")
        first, *settings = resource.create_commands()
        existed = None
        try:
            self.run(first)
        except ResourceExistsError as e:
            if not settings:
                raise
            logger.info(f"{resource} already exists, re-applying its settings")
            existed = e

        for command in settings:
            try:
                self.run(command)
            except GcloudError as e:
                if not already_applied(e):
                    raise
                logger.debug(f"Already applied: {' '.join(command)}")

        if existed is not None:
            raise existed

    def delete(self, resource):
        logger.info(f"Deleting {resource}...")
        self.run(resource.delete_command() + ['--quiet'])

    def describe(self, resource):
        """Current state of a resource as a dict, or None if it does not exist."""
        try:
            return self.run_json(resource.describe_command())
        except ResourceNotFoundError:
            return None

    # Compute Engine specifics

    def stop_instance(self, instance):
        logger.info(f"Stopping {instance}...")
        self.run(['compute', 'instances', 'stop', instance.name, *instance.scope_flags()])

    def start_instance(self, instance):
        logger.info(f"Starting {instance}...")
        self.run(['compute', 'instances', 'start', instance.name, *instance.scope_flags()])

    def ssh(self, instance, command):
        """Run a shell command on a VM and return its stdout."""
        return self.run(['compute', 'ssh', instance.name, *instance.scope_flags(), f'--command={command}'])

    def list_managed_instances(self, group):
        return self.run_json(group.list_instances_command()) or []

    def backend_health(self, service):
        return self.run_json(service.get_health_command()) or []

    def list_resources(self, collection, filter_expr=None, extra=()):
        """e.g. list_resources('instances', "name~'stress'") -> list of dicts."""
        args = ['compute', *collection.split(), 'list', *extra]
        if filter_expr:
            args.append(f'--filter={filter_expr}')
        return self.run_json(args) or []

    def delete_zonal(self, collection, name, zone):
        logger.info(f"Deleting {collection} {name} in {zone}")
        self.run(['compute', collection, 'delete', name, f'--zone={zone}', '--quiet'])
