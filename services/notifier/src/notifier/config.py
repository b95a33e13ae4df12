from __future__ import annotations

import os
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class NotifierConfigurationError(RuntimeError):
    pass


class NotifierSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    mailchimp_api_key: str | None = None
    mailchimp_list_id: str | None = None
    send_spacing_seconds: float = Field(default=0.1, ge=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> NotifierSettings:
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}
        mapping = {
            "MAILCHIMP_API_KEY": "mailchimp_api_key",
            "MAILCHIMP_LIST_ID": "mailchimp_list_id",
            "NOTIFIER_SEND_SPACING_SECONDS": "send_spacing_seconds",
        }
        for env_name, field_name in mapping.items():
            raw = env.get(env_name, "").strip()
            if raw:
                values[field_name] = raw
        try:
            return cls(**values)
        except ValidationError as exc:
            raise NotifierConfigurationError(f"Invalid notifier configuration: {exc}") from exc
