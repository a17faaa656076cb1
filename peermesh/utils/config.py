"""Read and write TOML config files using Pydantic models."""
from __future__ import annotations

import sys
from typing import Any
from typing import BinaryIO
from typing import TypeVar

import tomli_w
from pydantic import BaseModel

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    import tomllib
else:  # pragma: <3.11 cover
    import tomli as tomllib

BaseModelT = TypeVar('BaseModelT', bound=BaseModel)


def _to_dict(model: BaseModel, exclude_none: bool) -> dict[str, Any]:
    # TOML has no null so unset optional values are omitted by default.
    return model.model_dump(mode='json', exclude_none=exclude_none)


def dump(
    model: BaseModel,
    fp: BinaryIO,
    *,
    exclude_none: bool = True,
) -> None:
    """Write a model as TOML to a binary file.

    Args:
        model: Config model instance to write.
        fp: File-like bytes stream to write to.
        exclude_none: Skip writing `None` attributes.
    """
    tomli_w.dump(_to_dict(model, exclude_none), fp)


def dumps(model: BaseModel, *, exclude_none: bool = True) -> str:
    """Serialize a model to a TOML string.

    Args:
        model: Config model instance to serialize.
        exclude_none: Skip writing `None` attributes.

    Returns:
        TOML formatted string.
    """
    return tomli_w.dumps(_to_dict(model, exclude_none))


def load(model: type[BaseModelT], fp: BinaryIO) -> BaseModelT:
    """Parse TOML from a binary file into a model.

    Args:
        model: Config model type to validate the TOML with.
        fp: File-like bytes stream to read.

    Returns:
        Model initialized from the file.
    """
    return loads(model, fp.read().decode())


def loads(model: type[BaseModelT], data: str) -> BaseModelT:
    """Parse a TOML string into a model.

    Args:
        model: Config model type to validate the TOML with.
        data: TOML string to parse.

    Returns:
        Model initialized from the string.

    Raises:
        pydantic.ValidationError: If the parsed data does not match the
            model.
    """
    return model.model_validate(tomllib.loads(data), strict=True)
