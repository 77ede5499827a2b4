from __future__ import annotations

import typing
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional

from pydantic import BaseModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (as returned by some drivers) as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model that knows how to:
    - Serialize itself for DB persistence
    - Provide a backend-agnostic DB schema description derived from fields

    The actual SQL/NoSQL DDL is produced offline by the schema generator
    using this description; this class is not meant to hit the database
    at runtime for schema work.
    """

    # Logical collection / table name; subclasses should override
    collection_name: ClassVar[str]

    # Field used as the document key
    primary_key: ClassVar[str] = "id"

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        This is the single place to control how models are stored;
        DB adapters can still post-process this if needed.
        """
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields.

        The schema generator runs this once (e.g. from a CLI) to produce:
        - SQL DDL for relational databases
        - JSON/metadata for NoSQL collections and indexes
        """
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            field_type = cls._map_type(field.annotation)
            default = None if field.is_required() else field.get_default(call_default_factory=False)
            if isinstance(default, Enum):
                default = default.value

            properties[name] = {
                "type": field_type,
                "nullable": cls._is_optional(field.annotation),
                "default": default,
                "description": field.description,
            }

            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
        }

    @staticmethod
    def _is_optional(annotation: Any) -> bool:
        return type(None) in typing.get_args(annotation)

    @classmethod
    def _map_type(cls, annotation: Any) -> str:
        """
        Map a Python / Pydantic type annotation to a generic logical type.
        The schema generator will translate these to dialect-specific types.
        """
        if cls._is_optional(annotation):
            inner = [a for a in typing.get_args(annotation) if a is not type(None)]
            annotation = inner[0] if len(inner) == 1 else Any

        origin: Any = typing.get_origin(annotation)
        if origin in (list, tuple, set, frozenset):
            return "array"
        if origin is dict:
            return "object"

        if annotation is bool:
            return "boolean"
        if annotation is int:
            return "integer"
        if annotation in (float, Decimal):
            return "number"
        if annotation is datetime:
            return "datetime"
        if isinstance(annotation, type) and issubclass(annotation, str):
            # str and str-valued enums
            return "string"

        # Fallback for UUID, nested models, etc.; generator can refine using metadata
        name = getattr(annotation, "__name__", "object")
        return name.lower()
