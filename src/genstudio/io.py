from __future__ import annotations

from pathlib import Path
from typing import Any, TypeVar

import yaml
from pydantic import BaseModel

from .schema import RequestFile

T = TypeVar("T", bound=BaseModel)


def read_yaml(path: str | Path) -> dict[str, Any]:
    p = Path(path)
    data = yaml.safe_load(p.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"YAML root must be a mapping: {p}")
    return data


def load_model(model_cls: type[T], path: str | Path) -> T:
    return model_cls.model_validate(read_yaml(path))


def load_request_file(path: str | Path) -> RequestFile:
    """Load a request file. Relative image and output paths are taken from the file's directory."""
    p = Path(path)
    request = load_model(RequestFile, p)
    base = p.parent

    def rebase(value: Path) -> Path:
        return value if value.is_absolute() else base / value

    return request.model_copy(
        update={
            "images": [rebase(i) for i in request.images],
            "current": rebase(request.current) if request.current else None,
            "output": rebase(request.output) if request.output else None,
        }
    )
