"""
Form encoding for the upstream cloaking API.

The upstream is a PHP application and reads arrays from form posts using the
``name[index]=value`` convention, so lists are flattened into indexed keys
instead of being repeated or JSON-encoded.
"""

from typing import Any, List, Mapping, Tuple
from urllib.parse import urlencode


Pair = Tuple[str, str]


def stringify(value: Any) -> str:
    """Render a scalar the way the upstream expects it."""
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


def expand_field(name: str, value: Any) -> List[Pair]:
    """Flatten one field into form pairs.

    ``None`` drops the field entirely; an empty list produces no pairs.
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [(f"{name}[{index}]", stringify(item)) for index, item in enumerate(value)]
    if isinstance(value, Mapping):
        return [(f"{name}[{key}]", stringify(item)) for key, item in value.items()]
    return [(name, stringify(value))]


def form_pairs(api_key: str, fields: Mapping[str, Any]) -> List[Pair]:
    """Ordered form pairs with the API key always first."""
    pairs: List[Pair] = [("api_key", api_key)]
    for name, value in fields.items():
        pairs.extend(expand_field(name, value))
    return pairs


def encode_form(api_key: str, fields: Mapping[str, Any]) -> str:
    """Encode an upstream request body as ``application/x-www-form-urlencoded``.

    Square brackets are left unescaped so the body reads exactly like the
    upstream's documented examples.
    """
    return urlencode(form_pairs(api_key, fields), safe="[]")
