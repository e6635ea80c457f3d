import argparse
import logging
import sys
from dataclasses import dataclass, field
from typing import List

from gcloud_cli import GcloudCompute, basename
from gcp_lb import build_steps
from instance_manager import load_generator_step
from lab_config import configure_logging, load_config, resolve_project
from lab_errors import GcloudError, LabError, ResourceNotFoundError
from pipeline import Orchestrator, StepResult, StepStatus, fixed_answer, terminal_confirm

# script to tear down everything the lab created

logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    cancelled: bool = False
    results: List[StepResult] = field(default_factory=list)
    swept: List[StepResult] = field(default_factory=list)

    @property
    def failed(self):
        return [r for r in self.results + self.swept if r.status == StepStatus.FAILED]


def lifecycle_steps(api, config):
    """Every step that ever creates something, in creation order."""
    return build_steps(api, config) + [load_generator_step(api, config)]


def sweep(api, config, confirm, out=print):
    """Offer to delete leftovers that match our naming patterns, one category at a time."""
    results = []
    categories = (
        ('instances', config.instance_sweep_pattern),
        ('disks', config.disk_sweep_pattern),
    )
    for collection, pattern in categories:
        logger.info(f"Checking for any remaining {collection}...")
        leftovers = api.list_resources(collection, f"name~'{pattern}'")
        if not leftovers:
            continue

        logger.warning(f"Found remaining {collection}:")
        for item in leftovers:
            out(f"  {item.get('name')}\t{basename(item.get('zone'))}")
        if not confirm(f"Do you want to delete these {collection} as well?"):
            continue

        for item in leftovers:
            name, zone = item.get('name'), basename(item.get('zone'))
            if not name or not zone:
                continue
            try:
                api.delete_zonal(collection, name, zone)
            except ResourceNotFoundError:
                logger.warning(f"{name} already gone")
                results.append(StepResult(name, StepStatus.MISSING))
            except GcloudError as e:
                logger.error(f"Could not delete {name}: {e}")
                results.append(StepResult(name, StepStatus.FAILED, str(e)))
            else:
                results.append(StepResult(name, StepStatus.DELETED))
    return results


def cleanup(api, config, confirm=terminal_confirm, out=print):
    out("=== Google Cloud Application Load Balancer Cleanup ===")
    out("This will delete ALL resources created during the lab.")
    if not confirm("Are you sure you want to continue?"):
        out("Cleanup cancelled.")
        return CleanupReport(cancelled=True)

    report = CleanupReport()
    report.results = Orchestrator(lifecycle_steps(api, config)).teardown()
    report.swept = sweep(api, config, confirm, out)
    return report


def show_remaining(api, out=print):
    out("\n=== Verification ===")
    out("Remaining compute instances:")
    for item in api.list_resources('instances'):
        out(f"  {item.get('name', ''):<28} {basename(item.get('zone')):<16} {item.get('status', '')}")
    out("Remaining load balancers:")
    for item in api.list_resources('forwarding-rules', extra=['--global']):
        out(f"  {item.get('name', ''):<28} {basename(item.get('target'))}")
    out("Remaining instance groups:")
    for item in api.list_resources('instance-groups managed'):
        location = basename(item.get('region') or item.get('zone'))
        out(f"  {item.get('name', ''):<28} {location:<16} {item.get('targetSize', '')}")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Delete every resource the load balancer lab created.")
    parser.add_argument('--config', help='YAML file overriding the default lab settings')
    parser.add_argument('-y', '--yes', action='store_true',
                        help='answer yes to every prompt, including the leftover sweep')
    parser.add_argument('-v', '--verbose', action='store_true')
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    confirm = fixed_answer(True) if args.yes else terminal_confirm
    try:
        config = load_config(args.config)
        api = GcloudCompute()
        config = resolve_project(config, api)
        api.project = config.project

        report = cleanup(api, config, confirm)
        if report.cancelled:
            return 0
        show_remaining(api)
    except LabError as e:
        logger.error(str(e))
        return 1

    if report.failed:
        logger.error(f"{len(report.failed)} deletion(s) failed: {', '.join(r.name for r in report.failed)}")
        return 1

    print("\n=== Cleanup Complete! ===")
    print("It may take a few minutes for all resources to disappear from the console.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
