from . import github
from .model import BaseModel, json_default

__all__ = ["BaseModel", "github", "json_default"]
