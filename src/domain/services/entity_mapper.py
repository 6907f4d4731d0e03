"""Entity Mapping and Entity Mutation Detection.

Maps application objects (ORM-less entities, dataclasses, Pydantic models) to
table rows through an explicit per-type registry, and builds ChangeDescriptors
for persist/merge/remove-style operations on those objects.

Architecture:
    - Explicit mapping table instead of runtime reflection: each entity type
      is registered once with its table, column → attribute map and key
    - Pydantic models without an explicit column map use schema-driven
      serialization (model_dump by alias)
    - Implements MutationDetectorPort
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel

from src.domain.cdc_models import ChangeDescriptor, OperationType
from src.domain.ports import DetectionError, MutationDetectorPort

logger = logging.getLogger(__name__)

ColumnSource = Union[str, Callable[[Any], Any]]


@dataclass(frozen=True)
class EntityMapping:
    """How one entity type maps onto a table.

    Attributes:
        table_name: Target table
        columns: Column name → attribute name or getter; empty means
            schema-driven serialization (Pydantic models only)
        primary_key: Primary-key column names
    """
    table_name: str
    columns: dict[str, ColumnSource] = field(default_factory=dict)
    primary_key: tuple[str, ...] = ()


class EntityMapper:
    """Registry of entity-type mappings.

    Example Usage:
        ```python
        mapper = EntityMapper()
        mapper.register(Account, "accounts", {"id": "id", "balance": "balance"}, primary_key=["id"])
        mapper.to_row(account)  # {"id": 7, "balance": 150}
        ```
    """

    def __init__(self):
        self._mappings: dict[type, EntityMapping] = {}

    def register(
        self,
        entity_type: type,
        table_name: str,
        columns: Optional[dict[str, ColumnSource]] = None,
        primary_key: Optional[list[str]] = None
    ) -> EntityMapping:
        if not columns and not issubclass(entity_type, BaseModel):
            raise ValueError(
                f"{entity_type.__name__} needs an explicit column map (only Pydantic models can omit it)"
            )
        mapping = EntityMapping(
            table_name=table_name.lower(),
            columns=dict(columns or {}),
            primary_key=tuple(primary_key or ()),
        )
        self._mappings[entity_type] = mapping
        return mapping

    def mapping_for(self, entity: Any) -> Optional[EntityMapping]:
        """Find the mapping for an entity, honouring subclassing."""
        for klass in type(entity).__mro__:
            mapping = self._mappings.get(klass)
            if mapping is not None:
                return mapping
        return None

    def to_row(self, entity: Any) -> dict[str, Any]:
        """Column → value mapping for an entity.

        Raises:
            DetectionError: If the type is unregistered or a getter fails
        """
        mapping = self.mapping_for(entity)
        if mapping is None:
            raise DetectionError(f"No entity mapping registered for {type(entity).__name__}")

        if not mapping.columns:
            return entity.model_dump(by_alias=True, mode="python")

        row: dict[str, Any] = {}
        for column, source in mapping.columns.items():
            try:
                row[column] = source(entity) if callable(source) else getattr(entity, source)
            except Exception as e:
                raise DetectionError(
                    f"Failed to read column {column} from {type(entity).__name__}: {str(e)}",
                    source=mapping.table_name
                )
        return row

    def key_of(self, entity: Any) -> dict[str, Any]:
        """Non-null primary-key values of an entity."""
        mapping = self.mapping_for(entity)
        if mapping is None:
            return {}
        row = self.to_row(entity)
        return {name: row[name] for name in mapping.primary_key if row.get(name) is not None}


class EntityMutationDetector(MutationDetectorPort):
    """Builds descriptors for entity-level operations.

    - INSERT: after_data is the entity's row
    - UPDATE: after_data is the entity's row, key_data its primary key; the
      before row is captured by the RowResolver from the key
    - DELETE: only key_data; the before row is captured by the RowResolver
    """

    def __init__(self, mapper: EntityMapper):
        self.mapper = mapper

    def detect(self, target: Any, operation: OperationType) -> Optional[ChangeDescriptor]:
        mapping = self.mapper.mapping_for(target)
        if mapping is None:
            logger.debug(f"Entity type {type(target).__name__} is not mapped; not auditing")
            return None

        row = self.mapper.to_row(target)
        key = {name: row[name] for name in mapping.primary_key if row.get(name) is not None}

        if operation == OperationType.INSERT:
            return ChangeDescriptor(table_name=mapping.table_name, operation=operation,
                                    after_data=row, key_data=key or None)
        if not key:
            raise DetectionError(
                f"{operation.value} of {type(target).__name__} requires primary-key values",
                source=mapping.table_name
            )
        if operation == OperationType.UPDATE:
            return ChangeDescriptor(table_name=mapping.table_name, operation=operation,
                                    after_data=row, key_data=key)
        return ChangeDescriptor(table_name=mapping.table_name, operation=operation, key_data=key)
