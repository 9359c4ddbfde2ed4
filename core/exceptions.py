import inspect
from typing import Any, Iterable, Optional


class ProvisioningError(Exception):
    """Base class for every error raised by the provisioning core."""


class RenderError(ProvisioningError):
    """A script template or its parameters could not produce script text."""


class TemplateNotFound(RenderError):
    def __init__(self, template: str):
        self.template = template
        super().__init__(f"Script template '{template}' not found")


class ExecutionFailure(ProvisioningError):
    """A script exited non-zero or hit its timeout.

    The full ``ExecutionResult`` is kept so the caller can persist the
    captured output verbatim.
    """

    def __init__(self, message: str, result: Any = None):
        self.result = result
        super().__init__(message)

    @classmethod
    def from_result(cls, script_name: str, result: Any) -> "ExecutionFailure":
        if result.timed_out:
            message = f"{script_name} timed out"
        else:
            message = f"{script_name} failed with exit code {result.exit_code}"
        detail = (result.error_output or "").strip()
        if detail:
            message = f"{message}: {detail}"
        return cls(message, result)


class ExtractionFailure(ProvisioningError):
    """Structured output a step depends on was missing from stdout."""


class UnsupportedEntity(ProvisioningError):
    def __init__(self, entity: Any, attribute: str = "notes"):
        self.entity = entity
        super().__init__(
            f"{type(entity).__name__} does not declare a '{attribute}' column"
        )


class RecordAlreadyFinalized(ProvisioningError):
    def __init__(self, record_id: Any, status: str):
        self.record_id = record_id
        self.status = status
        super().__init__(f"Execution record {record_id} is already {status}")


class ChainAlreadyRunning(ProvisioningError):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"A chain is already running for {key}")


class ConfigurationError(ProvisioningError):
    """Required configuration or entity wiring is missing."""


class MetadataKeyNotFound(ProvisioningError):
    """Raised when a metadata key is read without a default and is absent.

    The message names the entity, the keys that *are* present and the
    call site that asked, so a broken pipeline points at its own bug.
    """

    def __init__(
        self,
        key: str,
        entity: Any,
        available_keys: Iterable[str],
        caller: Optional[dict] = None,
    ):
        self.key = key
        self.entity_type = type(entity).__name__
        self.entity_id = getattr(entity, "id", None)
        self.available_keys = sorted(available_keys)
        self.caller = caller if caller is not None else self._find_caller()

        available = ", ".join(self.available_keys) or "none"
        message = (
            f"Metadata key '{key}' not found on {self.entity_type} "
            f"(id: {self.entity_id}). Available keys: {available}."
        )
        if self.caller:
            message += (
                f" Called from {self.caller['function']} in "
                f"{self.caller['file']}:{self.caller['line']}."
            )
        super().__init__(message)

    @staticmethod
    def _find_caller() -> Optional[dict]:
        # First frame outside the metadata layer and this module
        skip = ("core/metadata.py", "core/exceptions.py")
        for frame_info in inspect.stack(0)[1:]:
            filename = frame_info.filename.replace("\\", "/")
            if filename.endswith(skip):
                continue
            return {
                "file": frame_info.filename,
                "line": frame_info.lineno,
                "function": frame_info.function,
            }
        return None
