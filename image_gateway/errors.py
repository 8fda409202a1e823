from __future__ import annotations

from typing import Any

from fastapi import status


class GatewayError(Exception):
    """Base error rendered into the ``{"error": {...}}`` envelope.

    Category, machine code and HTTP status are fixed where the error is raised;
    the exception handler never inspects the message text.
    """

    error_type = "server_error"
    code = "internal_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "code": self.code,
            }
        }


class InvalidRequestError(GatewayError):
    error_type = "invalid_request_error"
    code = "invalid_parameters"
    status_code = status.HTTP_400_BAD_REQUEST


class AuthenticationError(GatewayError):
    error_type = "invalid_request_error"
    code = "invalid_api_key"
    status_code = status.HTTP_401_UNAUTHORIZED


class UnsupportedModelError(InvalidRequestError):
    code = "unsupported_image_model"

    def __init__(self, requested_model: str, available_models: list[str]) -> None:
        self.requested_model = requested_model
        self.available_models = available_models
        listed = ", ".join(available_models) or "None (please check configuration)"
        super().__init__(
            f"Requested image generation model '{requested_model}' is not supported. "
            f"Available models are: {listed}."
        )


class ConfigurationError(GatewayError):
    error_type = "configuration_error"
    code = "env_config_error"


class ModelConflictError(ConfigurationError):
    code = "model_conflict"

    def __init__(self, model: str, detail: str) -> None:
        self.model = model
        self.detail = detail
        super().__init__(f"Model configuration conflict: {detail}")


class ModelConfigurationConflictError(ConfigurationError):
    code = "model_configuration_conflict"

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(
            f"Model configuration conflict: {detail} "
            "Please check your environment variable configuration."
        )


class AllKeysFailedError(ConfigurationError):
    code = "all_keys_failed"

    def __init__(
        self,
        *,
        provider_name: str,
        attempts: int,
        last_failure: str | None,
        model: str | None = None,
    ) -> None:
        self.provider_name = provider_name
        self.attempts = attempts
        self.last_failure = last_failure
        self.model = model
        target = f" for model '{model}'" if model else ""
        super().__init__(
            f"All {attempts} API keys configured for provider {provider_name}{target} "
            f"failed. Last error: {last_failure or 'Unknown error'}"
        )


class ServerError(GatewayError):
    pass
