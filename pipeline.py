import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from lab_errors import GcloudError, LabError, ProvisioningError, ResourceExistsError, ResourceNotFoundError

logger = logging.getLogger(__name__)


class StepStatus(Enum):
    CREATED = "CREATED"
    EXISTS = "EXISTS"
    DELETED = "DELETED"
    MISSING = "MISSING"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass
class Step:
    """One named unit of work, with the action that undoes it (if any)."""
    name: str
    create: Optional[Callable[[], None]] = None
    delete: Optional[Callable[[], None]] = None


@dataclass
class StepResult:
    name: str
    status: StepStatus
    detail: str = ''


class Orchestrator:
    """Runs steps in order on the way up and in reverse on the way down.

    Setup stops at the first real error and leaves whatever was already
    created in place: re-running is safe because "already exists" counts as
    success, and the cleanup workflow removes everything.
    """

    def __init__(self, steps):
        names = [s.name for s in steps]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate step names: {names}")
        self.steps: List[Step] = list(steps)

    def provision(self):
        results = []
        completed = []
        for step in self.steps:
            if step.create is None:
                results.append(StepResult(step.name, StepStatus.SKIPPED))
                continue

            try:
                step.create()
            except ResourceExistsError:
                logger.info(f"{step.name} already exists, skipping")
                results.append(StepResult(step.name, StepStatus.EXISTS))
            except LabError as e:
                # gcloud failures and readiness timeouts alike
                logger.error(f"{step.name} failed: {e}")
                raise ProvisioningError(step.name, completed, e) from e
            else:
                results.append(StepResult(step.name, StepStatus.CREATED))
            completed.append(step.name)
        return results

    def teardown(self):
        """Delete in reverse order. Missing resources and failures never stop the run."""
        results = []
        for step in reversed(self.steps):
            if step.delete is None:
                continue

            try:
                step.delete()
            except ResourceNotFoundError:
                logger.warning(f"{step.name} not found, skipping...")
                results.append(StepResult(step.name, StepStatus.MISSING))
            except GcloudError as e:
                logger.error(f"Could not delete {step.name}: {e}")
                results.append(StepResult(step.name, StepStatus.FAILED, str(e)))
            else:
                results.append(StepResult(step.name, StepStatus.DELETED))
        return results


def resource_step(api, resource, name=None):
    """The common case: a step that creates and deletes exactly one resource."""
    return Step(
        name=name or resource.name,
        create=lambda: api.create(resource),
        delete=lambda: api.delete(resource),
    )


AFFIRMATIVE = ('y', 'yes')


def is_affirmative(answer):
    return (answer or '').strip().lower() in AFFIRMATIVE


def terminal_confirm(prompt):
    """Ask on the terminal. Empty input, EOF and anything but y/yes mean no."""
    try:
        return is_affirmative(input(f"{prompt} (y/N) "))
    except EOFError:
        return False


def fixed_answer(answer):
    """A confirm callable that never asks, for scripted runs."""
    return lambda prompt: answer
