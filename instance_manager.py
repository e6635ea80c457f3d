import logging
import textwrap

from lab_errors import ResourceExistsError
from lb_resources import Instance, SourceImage
from pipeline import resource_step
from readiness import Poller

logger = logging.getLogger(__name__)


# Commands run over SSH on the temporary web server before it becomes an image
APACHE_SETUP_SCRIPT = textwrap.dedent("""\
    sudo apt-get update -y
    sudo apt-get install -y apache2
    sudo systemctl start apache2
    sudo systemctl enable apache2
    echo 'Web server configured successfully'
""")

APACHE_SMOKE_TEST = "curl -s localhost | head -5"

# Instance states in which the boot disk is (or is about to be) safe to image
STOPPED_STATES = ('STOPPING', 'TERMINATED')

BENCH_TOOLS_SCRIPT = textwrap.dedent("""\
    sudo apt-get update -y
    sudo apt-get install -y apache2-utils curl
    echo 'Apache Bench installed successfully'
""")


def webserver_instance(config):
    """The throwaway VM whose boot disk becomes our custom image."""
    return Instance(
        name=config.webserver_vm_name,
        zone=config.image_zone,
        machine_type=config.machine_type,
        image=config.base_image,
        image_project=config.base_image_project,
        tags=[config.health_check_tag],
        external_ip=False,
        shielded_vm=True,
    )


def source_image(config):
    return SourceImage(
        name=config.image_name,
        source_disk=config.webserver_vm_name,
        source_disk_zone=config.image_zone,
        family=config.image_family,
    )


def load_generator_instance(config):
    # Same image as the backends, so it already has curl and apt ready
    return Instance(
        name=config.stress_vm_name,
        zone=config.stress_zone,
        machine_type=config.stress_machine_type,
        image=config.image_name,
    )


def load_generator_step(api, config):
    """Created by the stress test, so it is the first thing cleanup removes."""
    return resource_step(api, load_generator_instance(config))


def instance_status(api, instance):
    state = api.describe(instance)
    return state.get('status') if state else None


def bake_image(api, config, poller=None):
    """Build the custom web server image from a disposable VM.

    Raises ResourceExistsError when the image is already there, so re-running
    setup never rebuilds it.
    """
    image = source_image(config)
    if api.describe(image) is not None:
        raise ResourceExistsError(f"Image {image.name} already exists")

    vm = webserver_instance(config)
    poller = poller or Poller(config.instance_stop_interval, config.instance_stop_attempts)

    # 1. Temporary VM, reused if a previous run died halfway
    try:
        api.create(vm)
        status = 'RUNNING'
    except ResourceExistsError:
        status = instance_status(api, vm)
        logger.info(f"{vm} already exists ({status}), reusing it")

    if status in STOPPED_STATES:
        # Stopped after configuration last time; the disk is ready
        logger.info(f"{vm.name} is already stopped, skipping configuration")
    else:
        if status != 'RUNNING':
            api.start_instance(vm)
            poller.wait_until(lambda: instance_status(api, vm) == 'RUNNING', f"{vm.name} to start")

        # 2. Apache
        logger.info("Configuring Apache on web server...")
        api.ssh(vm, APACHE_SETUP_SCRIPT)
        logger.info("Testing Apache installation...")
        print(api.ssh(vm, APACHE_SMOKE_TEST))
        api.stop_instance(vm)

    # 3. The disk has to be quiet before it can be imaged
    poller.wait_until(lambda: instance_status(api, vm) == 'TERMINATED', f"{vm.name} to stop")

    # 4. Image, then get rid of the VM
    api.create(image)
    logger.info(f"Deleting temporary {vm}...")
    api.delete(vm)
    return image


def install_bench_tools(api, host):
    logger.info(f"Installing Apache Bench on {host.name}...")
    return api.ssh(host, BENCH_TOOLS_SCRIPT)
