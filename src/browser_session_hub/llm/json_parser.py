"""Turn model replies into plans and extraction results."""

from __future__ import annotations

import json
import re
from typing import Any

from ..models import ActionPlan

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_DECODER = json.JSONDecoder()


def extract_json_object(text: str) -> dict[str, Any]:
    """Return the first JSON object embedded in *text*.

    A fenced block is preferred when present. Prose around the object may
    contain stray braces, so decoding is attempted from each ``{`` in turn.
    """

    match = _FENCED_BLOCK.search(text)
    body = match.group(1) if match else text
    position = body.find("{")
    while position != -1:
        try:
            value, _ = _DECODER.raw_decode(body, position)
        except json.JSONDecodeError:
            position = body.find("{", position + 1)
            continue
        return value
    raise ValueError("No JSON object found in model response")


def parse_plan(text: str) -> ActionPlan:
    return ActionPlan.model_validate(extract_json_object(text))
