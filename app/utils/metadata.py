"""
Gateway metadata flattening

The gateway only accepts a flat string-to-string map, so nested structures
are collapsed before they leave the process.
"""

from typing import Any, Dict, Optional
import re

MAX_KEYS = 50
MAX_KEY_LENGTH = 50
MAX_NESTED_KEY_LENGTH = 30
MAX_VALUE_LENGTH = 500

_KEY_PATTERN = re.compile(r"[^a-zA-Z0-9_]")

def sanitize_key(key: Any, max_length: int = MAX_KEY_LENGTH) -> str:
    return _KEY_PATTERN.sub("_", str(key))[:max_length]

def _stringify(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, (list, tuple)):
        text = ",".join(str(v) for v in value if v is not None)
    else:
        text = str(value)
    if text == "":
        return None
    return text[:MAX_VALUE_LENGTH]

def flatten_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """
    Flatten arbitrary metadata into the bounded map the gateway accepts

    Nested dicts are joined as ``parent_child`` (one level deep), lists are
    comma-joined, values are truncated, empty values dropped and the result
    is capped at ``MAX_KEYS`` entries.

    Args:
        metadata: Free-form metadata

    Returns:
        Flat string map
    """
    flat: Dict[str, str] = {}
    if not metadata:
        return flat

    for key, value in metadata.items():
        if len(flat) >= MAX_KEYS:
            break
        clean_key = sanitize_key(key)
        if not clean_key:
            continue

        if isinstance(value, dict):
            for nested_key, nested_value in value.items():
                if len(flat) >= MAX_KEYS:
                    break
                nested = _stringify(nested_value)
                if nested is None:
                    continue
                flat_key = f"{clean_key}_{sanitize_key(nested_key, MAX_NESTED_KEY_LENGTH)}"
                flat[flat_key[:MAX_KEY_LENGTH]] = nested
            continue

        text = _stringify(value)
        if text is not None:
            flat[clean_key] = text

    return flat
