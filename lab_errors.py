class LabError(Exception):
    """Base class for everything the lab scripts raise on purpose."""


class ConfigError(LabError):
    pass


class GcloudError(LabError):
    """A gcloud invocation exited non-zero (or gcloud is not installed)."""

    def __init__(self, message, command=None, returncode=None, stderr=""):
        super().__init__(message)
        self.command = command or []
        self.returncode = returncode
        self.stderr = stderr


class ResourceExistsError(GcloudError):
    pass


class ResourceNotFoundError(GcloudError):
    pass


class ProvisioningError(LabError):
    """A setup step failed; nothing after it ran and nothing before it was undone."""

    def __init__(self, step, completed, cause):
        self.step = step
        self.completed = list(completed)
        self.cause = cause
        done = ", ".join(self.completed) if self.completed else "none"
        super().__init__(f"Step '{step}' failed: {cause} (completed before failure: {done})")


class ReadinessTimeout(LabError):
    def __init__(self, what, attempts):
        self.what = what
        self.attempts = attempts
        super().__init__(f"{what} not ready after {attempts} attempts")


class BenchmarkParseError(LabError):
    pass
