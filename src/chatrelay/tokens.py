"""Token estimates used when a provider never reported usage."""

from __future__ import annotations

from functools import lru_cache
from typing import Mapping, Sequence

import tiktoken

FALLBACK_ENCODING = "o200k_base"
MESSAGE_OVERHEAD_TOKENS = 4
REPLY_PRIMING_TOKENS = 2


@lru_cache(maxsize=32)
def _encoding_for(model: str) -> "tiktoken.Encoding":
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        return tiktoken.get_encoding(FALLBACK_ENCODING)


def count_tokens(text: str, model: str) -> int:
    return len(_encoding_for(model).encode(text, disallowed_special=())) + 1


def count_message_tokens(messages: Sequence[Mapping[str, str]], model: str) -> int:
    encoding = _encoding_for(model)
    total = REPLY_PRIMING_TOKENS
    for message in messages:
        total += MESSAGE_OVERHEAD_TOKENS
        total += len(encoding.encode(message.get("role", ""), disallowed_special=()))
        total += len(encoding.encode(message.get("content", ""), disallowed_special=()))
    return total
