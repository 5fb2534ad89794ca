# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_credits

from typing import Any, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CreditsConfig(BaseSettings):  # type: ignore[misc]
    """Configuration for Coreason Credits."""

    model_config = SettingsConfigDict(
        env_prefix="COREASON_CREDITS_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    redis_url: str = Field(default="redis://localhost:6379", description="Redis connection URL")
    key_prefix: str = Field(default="credits:v1", description="Namespace for every key the store writes")

    # Seed balances, chosen by the allotment class of the identity on first contact
    anonymous_allotment: int = Field(default=5000, ge=0, description="Free credit for anonymous identities")
    registered_allotment: int = Field(default=0, ge=0, description="Free credit for authenticated identities")
    signup_bonus: int = Field(default=5000, ge=0, description="Free credit granted per verified signup event")

    reservation_ttl_seconds: int = Field(default=300, gt=0, description="Maximum lifetime of a reservation")
    sweep_interval_seconds: float = Field(default=30.0, gt=0, description="Period of the expired reservation sweep")
    max_update_retries: int = Field(default=16, gt=0, description="Compare-and-swap attempts per operation")
    idempotency_ttl_seconds: int = Field(
        default=7 * 24 * 3600, gt=0, description="How long grant deduplication keys are remembered"
    )
    payment_webhook_secret: Optional[str] = Field(
        default=None, description="Shared secret the payment provider sends in X-Webhook-Secret"
    )

    default_model: str = Field(default="gpt-4o-mini", description="Model used by the reference executor")
    chars_per_token: float = Field(default=4.0, gt=0, description="Character heuristic for token estimation")
    default_max_output_tokens: int = Field(
        default=512, ge=0, description="Completion budget added to every estimate"
    )

    @model_validator(mode="before")
    @classmethod
    def compat_free_anon_credits(cls, data: Any) -> Any:
        """Allow 'free_anon_credits' as an alias for 'anonymous_allotment'."""
        if isinstance(data, dict):
            if "free_anon_credits" in data and "anonymous_allotment" not in data:
                data["anonymous_allotment"] = data["free_anon_credits"]
        return data
