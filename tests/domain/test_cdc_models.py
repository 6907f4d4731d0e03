"""Tests for the change-audit domain models."""

import copy
from datetime import datetime

import pytest
from pydantic import ValidationError

from src.domain.cdc_models import (
    PENDING,
    AuditPage,
    AuditRecord,
    BufferState,
    ChangeDescriptor,
    ColumnMetadata,
    OperationType,
    TransactionBuffer,
    is_pending,
)


class TestChangeDescriptor:
    """Test ChangeDescriptor validation."""

    def test_table_name_is_normalized(self):
        descriptor = ChangeDescriptor(table_name='  "Orders" ', operation=OperationType.UPDATE)
        assert descriptor.table_name == "orders"

    def test_empty_table_name_rejected(self):
        with pytest.raises(ValidationError):
            ChangeDescriptor(table_name="  ", operation=OperationType.INSERT)

    def test_insert_cannot_carry_before_data(self):
        with pytest.raises(ValidationError):
            ChangeDescriptor(
                table_name="orders",
                operation=OperationType.INSERT,
                before_data={"id": 1},
            )

    def test_delete_cannot_carry_after_data(self):
        with pytest.raises(ValidationError):
            ChangeDescriptor(
                table_name="orders",
                operation=OperationType.DELETE,
                after_data={"id": 1},
            )

    def test_with_note_returns_copy(self):
        descriptor = ChangeDescriptor(table_name="orders", operation=OperationType.DELETE)
        noted = descriptor.with_note("before row not found")
        assert noted.resolution_notes == ["before row not found"]
        assert descriptor.resolution_notes == []


class TestPending:
    """Test the post-execution placeholder."""

    def test_singleton_survives_copies(self):
        assert copy.copy(PENDING) is PENDING
        assert copy.deepcopy({"id": PENDING})["id"] is PENDING

    def test_is_pending(self):
        assert is_pending(PENDING)
        assert not is_pending(None)
        assert not PENDING


class TestColumnMetadata:
    """Test ColumnMetadata classification."""

    @pytest.mark.parametrize("kwargs,expected", [
        ({"is_auto_increment": True}, True),
        ({"is_computed": True}, True),
        ({"server_default": "CURRENT_TIMESTAMP"}, True),
        ({"has_default": True, "default_value": "PENDING"}, False),
        ({}, False),
    ])
    def test_is_server_generated(self, kwargs, expected):
        assert ColumnMetadata(name="c", **kwargs).is_server_generated is expected


class TestAuditRecord:
    """Test AuditRecord construction and row mapping."""

    def test_defaults(self):
        record = AuditRecord(table_name="orders", operation=OperationType.INSERT)
        assert record.actor == "SYSTEM"
        assert len(record.audit_id) == 36
        assert isinstance(record.occurred_at, datetime)
        assert record.occurred_at.tzinfo is None

    def test_remark_length_limited(self):
        with pytest.raises(ValidationError):
            AuditRecord(table_name="orders", operation=OperationType.INSERT, remark="x" * 501)

    def test_record_is_immutable(self):
        record = AuditRecord(table_name="orders", operation=OperationType.INSERT)
        with pytest.raises(ValidationError):
            record.actor = "alice"

    def test_row_mapping(self):
        record = AuditRecord(
            table_name="orders",
            operation=OperationType.UPDATE,
            primary_key_name="id",
            primary_key_value="7",
            old_value_json='{"status": "NEW"}',
            new_value_json='{"status": "PAID"}',
            actor="alice",
            remark="manual fix",
        )
        row = record.to_row()
        assert row["operation_type"] == "UPDATE"
        assert row["operator"] == "alice"
        assert row["old_value"] == '{"status": "NEW"}'
        assert AuditRecord.from_row(row) == record


class TestAuditPage:
    """Test paging flags."""

    def test_has_next_and_previous(self):
        assert AuditPage(total=25, page=0, page_size=10).has_next
        assert not AuditPage(total=25, page=2, page_size=10).has_next
        assert AuditPage(total=25, page=2, page_size=10).has_previous
        assert not AuditPage(total=0, page=0, page_size=10).has_previous


class TestTransactionBuffer:
    """Test the per-transaction buffer."""

    def test_drain_keeps_append_order(self):
        buffer = TransactionBuffer(transaction_id="tx-1")
        first = AuditRecord(table_name="a", operation=OperationType.INSERT)
        second = AuditRecord(table_name="b", operation=OperationType.DELETE)
        buffer.append(first)
        buffer.append(second)

        assert buffer.state == BufferState.BUFFERING
        assert buffer.drain() == [first, second]
        assert buffer.records == []
