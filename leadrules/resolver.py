from typing import Any, Mapping, Optional, Sequence
from pydantic import BaseModel


def as_mapping(lead: Any) -> Mapping[str, Any]:
    if isinstance(lead, BaseModel):
        return lead.model_dump(by_alias=True)
    if isinstance(lead, Mapping):
        return lead
    return {}


def resolve(lead: Any, path: str) -> Optional[Any]:
    """Walk a dotted path (``fields.budget``, ``items.0.sku``) through a lead.

    Mappings are entered by key and lists by a non-negative integer segment.
    Anything missing along the way yields ``None``.
    """
    if not isinstance(path, str):
        return None
    current: Any = as_mapping(lead)
    for segment in path.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(segment)
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            if not segment.isdecimal():
                return None
            index = int(segment)
            if index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current
