"""
errors.py — meshrotate Error Taxonomy

Coded errors for the root rotation workflow. Every failure is surfaced to the
operator with its code and context; nothing here is retried automatically.
"""

from typing import List, Optional, Sequence

__all__ = [
    "RotationError",
    "PrerequisiteMissingError",
    "ConfigurationNotFoundError",
    "ConfigurationError",
    "WorkspaceIncompleteError",
    "TransitionError",
    "InvalidTransitionError",
    "TransitionReadbackMismatchError",
    "VerificationFailureError",
    "PropagationTimeoutError",
    "UnverifiedPhaseError",
    "SnapshotMissingError",
    "SnapshotIntegrityError",
    "ClusterCommandError",
]


class RotationError(Exception):
    """Base class for all meshrotate errors."""
    def __init__(
        self,
        code: str,
        message: str,
        context: Optional[str] = None,
    ):
        self.code = code
        self.message = message
        self.context = context

        full_msg = f"[{code}] {message}"
        if context:
            full_msg += f" Context: {context}"

        super().__init__(full_msg)

    @property
    def doc_url(self) -> str:
        """Link to the runbook entry for this error."""
        return f"https://meshrotate.readthedocs.io/errors/{self.code}"


# Environment Errors (E0xx)
class PrerequisiteMissingError(RotationError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("MESHROT_E001", "A required external tool is not available on PATH.", context)

class ConfigurationNotFoundError(RotationError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("MESHROT_E002", "No existing root CA secret was found in the control-plane namespace.", context)

class ConfigurationError(RotationError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("MESHROT_E003", "A configuration value is invalid.", context)

class WorkspaceIncompleteError(RotationError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("MESHROT_E004", "The rotation workspace is missing required certificate artifacts.", context)


# Transition Errors (E1xx)
class TransitionError(RotationError):
    def __init__(self, context: Optional[str] = None, code: str = "MESHROT_E100",
                 message: str = "The phase transition could not be applied."):
        super().__init__(code, message, context)

class InvalidTransitionError(TransitionError):
    def __init__(self, context: Optional[str] = None):
        super().__init__(context, "MESHROT_E101", "The requested phase transition is not permitted from the declared current phase.")

class TransitionReadbackMismatchError(TransitionError):
    def __init__(
        self,
        expected: Sequence[str],
        observed: Sequence[str],
        context: Optional[str] = None,
    ):
        self.expected = list(expected)
        self.observed = list(observed)
        detail = f"expected anchors {self.expected}, read back {self.observed}"
        if context:
            detail = f"{context}: {detail}"
        super().__init__(detail, "MESHROT_E102", "The trust bundle read back from the cluster does not match the target phase.")


# Verification Errors (E2xx)
class VerificationFailureError(RotationError):
    """A probe step observed failed requests.

    Fatal to the advance decision only; the cluster is not touched further.
    """
    def __init__(self, label: str, step: str, failures: List[str]):
        self.label = label
        self.step = step
        self.failures = list(failures)
        context = f"phase={label} step={step} failures={len(self.failures)}"
        super().__init__("MESHROT_E200", "Connectivity probe observed failed requests.", context)

class PropagationTimeoutError(RotationError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("MESHROT_E201", "A workload did not become ready within the rollout timeout.", context)

class UnverifiedPhaseError(RotationError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("MESHROT_E202", "The declared current phase has no passing connectivity verification.", context)


# Snapshot Errors (E3xx)
class SnapshotMissingError(RotationError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("MESHROT_E300", "No pre-rotation snapshot is available.", context)

class SnapshotIntegrityError(RotationError):
    def __init__(self, context: Optional[str] = None):
        super().__init__("MESHROT_E301", "The snapshot cannot be written or does not match its recorded digest.", context)


# Cluster Errors (E4xx)
class ClusterCommandError(RotationError):
    def __init__(self, command: Sequence[str], returncode: int, stderr: str):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        context = f"`{' '.join(self.command)}` exited {returncode}: {stderr.strip()}"
        super().__init__("MESHROT_E400", "A cluster command failed.", context)
