"""Read and write TOML config files using Pydantic models."""
from __future__ import annotations

import pathlib
import sys
from typing import BinaryIO
from typing import TypeVar

import tomli_w
from pydantic import BaseModel

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    import tomllib
else:  # pragma: <3.11 cover
    import tomli as tomllib

BaseModelT = TypeVar('BaseModelT', bound=BaseModel)


def dumps(model: BaseModel, *, exclude_none: bool = True) -> str:
    """Serialize a config model to a TOML formatted string.

    Args:
        model: Config model instance to write.
        exclude_none: Skip writing attributes which are `None`.
    """
    return tomli_w.dumps(model.model_dump(exclude_none=exclude_none))


def dump(
    model: BaseModel,
    fp: BinaryIO,
    *,
    exclude_none: bool = True,
) -> None:
    """Serialize a config model as TOML to a binary file-like object."""
    tomli_w.dump(model.model_dump(exclude_none=exclude_none), fp)


def loads(model: type[BaseModelT], data: str) -> BaseModelT:
    """Parse a TOML string into a config model.

    Raises:
        pydantic.ValidationError: If the data does not match the model.
    """
    return model.model_validate(tomllib.loads(data), strict=True)


def load(model: type[BaseModelT], fp: BinaryIO) -> BaseModelT:
    """Parse TOML from a binary file-like object into a config model."""
    return loads(model, fp.read().decode())


def load_file(
    model: type[BaseModelT],
    filepath: str | pathlib.Path,
) -> BaseModelT:
    """Parse a TOML file on disk into a config model."""
    with open(filepath, 'rb') as f:
        return load(model, f)
