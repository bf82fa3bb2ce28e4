from __future__ import annotations


class SetupError(RuntimeError):
    """Base provisioning error."""


class PrivilegeError(SetupError):
    """Not running with root privileges."""


class LockHeldError(SetupError):
    def __init__(self, path: str, holder: str | None = None):
        message = f"Another setup run is in progress (lock: {path})."
        if holder:
            message = f"Another setup run is in progress (lock: {path}, pid {holder})."
        super().__init__(message)
        self.path = path
        self.holder = holder


class InvalidStageError(SetupError):
    def __init__(self, stage: object, total: int):
        super().__init__(f"Invalid stage number: {stage}. Must be between 1 and {total}.")
        self.stage = stage
        self.total = total


class MissingCredentialError(SetupError):
    pass


class CommandError(SetupError):
    def __init__(self, argv: list[str], returncode: int, stderr: str | None = None):
        label = " ".join(argv[:3]) if argv else "command"
        message = f"`{label}` failed with exit code {returncode}"
        detail = (stderr or "").strip()
        if detail:
            message = f"{message}: {detail.splitlines()[-1]}"
        super().__init__(message)
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr or ""


class DependencyInstallError(SetupError):
    pass


class AuthenticationError(SetupError):
    pass


class ConfigExtractionError(SetupError):
    pass


class EnvironmentGenerationError(SetupError):
    pass


class PortConflictError(SetupError):
    def __init__(self, ports: list[int]):
        joined = ", ".join(str(p) for p in ports)
        super().__init__(f"Required ports already in use: {joined}")
        self.ports = list(ports)


class ServiceStartError(SetupError):
    pass


class ServiceReadinessTimeout(SetupError):
    """Soft failure: a service did not report running in time."""

    def __init__(self, service: str, timeout_s: float):
        super().__init__(f"Service {service} not running after {timeout_s:g}s")
        self.service = service
        self.timeout_s = timeout_s


class FirewallError(SetupError):
    pass


class AccessConfigError(SetupError):
    pass


class SshKeyError(SetupError):
    pass


class MailpitError(SetupError):
    pass
