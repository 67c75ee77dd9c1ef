# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_faers_submission

"""Custom SQLAlchemy column types."""

from typing import Any

from pydantic import TypeAdapter, ValidationError
from sqlalchemy.types import JSON, TypeDecorator

from coreason_faers_submission.exceptions import StorageValueError


class PydanticJson(TypeDecorator):
    """
    JSON column validated through a pydantic ``TypeAdapter``.

    Values are checked and normalized when written and decoded once into the
    declared Python type when read, e.g. ``PydanticJson(list[str])``.
    """

    impl = JSON
    cache_ok = True

    def __init__(self, python_type: Any) -> None:
        super().__init__()
        self._python_type = python_type
        self._adapter: TypeAdapter[Any] = TypeAdapter(python_type)

    def validate(self, value: Any) -> Any:
        try:
            return self._adapter.validate_python(value)
        except ValidationError as e:
            raise StorageValueError(f"Invalid value for {self._python_type}: {e}") from e

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return self._adapter.dump_python(self.validate(value), mode="json")

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return self.validate(value)
