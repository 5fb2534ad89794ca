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
from typing import Awaitable, Callable, Tuple, TypeVar

import litellm

from coreason_credits.estimation import CompletionRequest
from coreason_credits.exceptions import WorkExecutionError
from coreason_credits.utils.logger import logger

T = TypeVar("T")

# Performs the billable work and reports (result, actual_cost)
WorkExecutor = Callable[[CompletionRequest], Awaitable[Tuple[T, int]]]


class LiteLLMExecutor:
    """Runs a chat completion and bills it by total tokens used."""

    def __init__(self, empty_reply: str = "(no reply)", chars_per_token: float = 4.0) -> None:
        self.empty_reply = empty_reply
        self.chars_per_token = chars_per_token

    def _count_tokens(self, request: CompletionRequest, content: str) -> int:
        """Count prompt plus reply tokens for responses that carry no usage."""
        messages = request.messages + [{"role": "assistant", "content": content}]
        try:
            return int(litellm.token_counter(model=request.model, messages=messages))
        except Exception as e:
            logger.warning("Token counting failed for model {}, using character heuristic: {}", request.model, e)
            chars = sum(len(m.get("content", "")) for m in messages)
            return math.ceil(chars / self.chars_per_token)

    async def __call__(self, request: CompletionRequest) -> Tuple[str, int]:
        kwargs = {"model": request.model, "messages": request.messages}
        if request.max_tokens is not None:
            kwargs["max_tokens"] = request.max_tokens

        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            logger.error("Completion failed for model {}: {}", request.model, e)
            raise WorkExecutionError(f"Completion request failed: {e}") from e

        content = response.choices[0].message.content if response.choices else None
        reply = content.strip() if content and content.strip() else self.empty_reply

        usage = getattr(response, "usage", None)
        if usage is not None and getattr(usage, "total_tokens", None) is not None:
            total_tokens = int(usage.total_tokens)
        else:
            total_tokens = self._count_tokens(request, content or "")
            logger.warning("Provider reported no usage for {}, counted {} tokens", request.model, total_tokens)
        logger.info("Completion on {} used {} tokens", request.model, total_tokens)
        return reply, total_tokens
