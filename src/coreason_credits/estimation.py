# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_credits

import math
from typing import Dict, List, Optional, Protocol, Union

import litellm
from pydantic import BaseModel, Field

from coreason_credits.config import CreditsConfig
from coreason_credits.utils.logger import logger


class CompletionRequest(BaseModel):  # type: ignore[misc]
    """Inputs of one billable completion."""

    model: str
    messages: List[Dict[str, str]]
    max_tokens: Optional[int] = Field(default=None, ge=0)

    @classmethod
    def from_message(cls, model: str, message: str, max_tokens: Optional[int] = None) -> "CompletionRequest":
        return cls(model=model, messages=[{"role": "user", "content": message}], max_tokens=max_tokens)


class CostEstimator(Protocol):
    def estimate(self, request: CompletionRequest) -> Union[int, float]:
        """Return a finite, non-negative upper bound on the cost of request."""
        ...


def to_credits(cost: Union[int, float]) -> int:
    """Round a cost up to whole credits, rejecting negative or non-finite values."""
    if isinstance(cost, bool) or not isinstance(cost, (int, float)):
        raise ValueError("Cost must be a number.")
    if not math.isfinite(cost):
        raise ValueError("Cost must be a finite number.")
    if cost < 0:
        raise ValueError("Cost must be non-negative.")
    return math.ceil(cost)


class CharacterHeuristicEstimator:
    """Estimates tokens from prompt length, plus the completion budget."""

    def __init__(self, config: Optional[CreditsConfig] = None) -> None:
        self.config = config or CreditsConfig()

    def estimate(self, request: CompletionRequest) -> int:
        chars = sum(len(m.get("content", "")) for m in request.messages)
        prompt_tokens = math.ceil(chars / self.config.chars_per_token)
        max_tokens = request.max_tokens if request.max_tokens is not None else self.config.default_max_output_tokens
        return prompt_tokens + max_tokens


class LiteLLMTokenEstimator:
    """Counts prompt tokens with the model's tokenizer via liteLLM."""

    def __init__(self, config: Optional[CreditsConfig] = None) -> None:
        self.config = config or CreditsConfig()
        self._fallback = CharacterHeuristicEstimator(self.config)

    def estimate(self, request: CompletionRequest) -> int:
        """
        Estimate the cost of request in tokens.

        Args:
            request: The completion about to be run.

        Returns:
            Prompt tokens plus the completion budget.
        """
        max_tokens = request.max_tokens if request.max_tokens is not None else self.config.default_max_output_tokens
        try:
            prompt_tokens = litellm.token_counter(model=request.model, messages=request.messages)
        except Exception as e:
            # liteLLM raises for models it has no tokenizer mapping for
            logger.warning("Token counting failed for model {}: {}. Using character heuristic.", request.model, e)
            return self._fallback.estimate(request)
        return int(prompt_tokens) + max_tokens
