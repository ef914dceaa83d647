"""Policy ingestion: validate loosely-typed JSON into a strict ``Policy``."""
from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from policykit.schemas.policy import Policy
from policykit.utils.errors import PolicyValidationError

logger = logging.getLogger(__name__)

DEFAULT_POLICY = Policy(id="default", name="Default Policy")


def _validation_messages(exc: ValidationError) -> list[str]:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        message = error.get("msg", "invalid value")
        messages.append(f"{location}: {message}" if location else message)
    return messages


def load_policy(data: Mapping[str, Any] | str | bytes) -> Policy:
    """Validate and normalise a policy document.

    Accepts camelCase or snake_case keys. Missing fields fall back to the
    defaults, a missing id gets a generated one. Unknown keys are rejected.
    """

    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as exc:
            raise PolicyValidationError(f"Policy is not valid JSON: {exc.msg}") from exc

    if not isinstance(data, Mapping):
        raise PolicyValidationError("Policy must be a JSON object.")

    payload = dict(data)
    if not payload.get("id"):
        payload["id"] = f"policy_{uuid.uuid4().hex[:12]}"

    try:
        policy = Policy.model_validate(payload)
    except ValidationError as exc:
        errors = _validation_messages(exc)
        logger.info("Policy rejected at ingestion", extra={"errors": errors})
        raise PolicyValidationError(
            "Policy failed validation.",
            details={"errors": errors},
        ) from exc

    logger.debug("Policy loaded", extra={"policy_id": policy.id})
    return policy


def load_policy_file(path: str | Path) -> Policy:
    """Read and validate a JSON policy file."""

    text = Path(path).read_text(encoding="utf-8")
    return load_policy(text)


def dump_policy(policy: Policy) -> str:
    """Serialise a policy with the camelCase keys used by the dashboard."""

    return policy.model_dump_json(by_alias=True, indent=2)


def validate_policy(data: Mapping[str, Any] | str | bytes) -> tuple[bool, list[str]]:
    """Return ``(valid, errors)`` without raising."""

    try:
        load_policy(data)
    except PolicyValidationError as exc:
        return False, list(exc.details.get("errors", [exc.message]))
    return True, []


__all__ = ["DEFAULT_POLICY", "load_policy", "load_policy_file", "dump_policy", "validate_policy"]
