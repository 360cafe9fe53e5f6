from typing import Optional


class ConduitError(Exception):
    """Base error for gateway, tool loop and automation failures."""


class ProviderError(ConduitError):
    """A provider request failed and should not be retried."""

    def __init__(self, provider: str, detail: str, status_code: Optional[int] = None):
        self.provider = provider
        self.detail = detail
        self.status_code = status_code
        prefix = f"{provider} error"
        if status_code is not None:
            prefix = f"{prefix} ({status_code})"
        super().__init__(f"{prefix}: {detail}")


class TransientProviderError(ProviderError):
    """Rate limit, server error or network failure; safe to retry."""


class ProviderConfigurationError(ProviderError):
    """Missing credentials or endpoint for a provider."""


class ModelNotFoundError(ConduitError):
    def __init__(self, model_id: str):
        self.model_id = model_id
        super().__init__(f"Model {model_id} not found in registry.")


class ToolLoopLimitError(ConduitError):
    """The model kept requesting tools past the iteration cap."""


class PipelineStepError(ConduitError):
    def __init__(self, step_id: str, step_type: str, message: str):
        self.step_id = step_id
        self.step_type = step_type
        super().__init__(message)


class VaultError(ConduitError):
    """Vault root missing, path escapes the vault, or the write failed."""


__all__ = [
    "ConduitError",
    "ModelNotFoundError",
    "PipelineStepError",
    "ProviderConfigurationError",
    "ProviderError",
    "ToolLoopLimitError",
    "TransientProviderError",
    "VaultError",
]
