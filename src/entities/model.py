import dataclasses
import enum

from pydantic import BaseModel as PydanticBaseModel
from pydantic import ConfigDict


def _convert_to_serializable(obj):  # noqa: ANN001, ANN202, PLR0911
    """Recursively convert objects to JSON-serializable format."""
    if isinstance(obj, PydanticBaseModel):
        return {field_name: _convert_to_serializable(getattr(obj, field_name)) for field_name in obj.__class__.model_fields}
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {field.name: _convert_to_serializable(getattr(obj, field.name)) for field in dataclasses.fields(obj)}
    if isinstance(obj, (frozenset, set)):
        # Sorted so that log lines and snapshots are stable between runs
        return sorted((_convert_to_serializable(item) for item in obj), key=str)
    if isinstance(obj, dict):
        return {key: _convert_to_serializable(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_convert_to_serializable(item) for item in obj]
    if isinstance(obj, enum.Enum):
        return obj.value
    return obj


class BaseModel(PydanticBaseModel):
    model_config = ConfigDict(frozen=True)

    def dict(self, *args, **kwargs) -> dict:  # noqa: ANN101, ANN003, ANN002, ARG002
        """Converts instance to dict representation of it. Workaround for https://github.com/pydantic/pydantic/issues/1090"""
        return _convert_to_serializable(self)


def json_default(o: object) -> str | dict | list:
    if isinstance(o, PydanticBaseModel):
        return o.dict()
    elif dataclasses.is_dataclass(o) and not isinstance(o, type):
        return _convert_to_serializable(o)
    elif isinstance(o, (set, frozenset)):
        return _convert_to_serializable(o)
    elif isinstance(o, enum.Enum):
        return o.value
    return str(o)
