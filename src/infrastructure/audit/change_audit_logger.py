"""Change Audit Logger.

This module provides the entry point of the change-audit pipeline. A mutation
detector hands it a ChangeDescriptor before and after the mutation executes;
the logger runs the RowResolver, the AuditRecordBuilder and the
TransactionCoordinator in order.

Security Impact:
    - Creates an append-only audit trail of row-level changes
    - Audit failures never propagate into the business operation: every
      audit-side exception is caught and logged here
    - Exceptions raised by the business operation itself propagate unchanged
      and produce no audit record

Architecture:
    - Infrastructure layer facade over domain services
    - detector → resolver.prepare → (mutation) → resolver.complete →
      builder.build → coordinator.record
"""

import logging
from typing import Any, Callable, Optional, TypeVar

from src.domain.cdc_models import AuditRecord, ChangeDescriptor, OperationType
from src.domain.guardrails import AuditMetrics
from src.domain.ports import DetectionError, MutationDetectorPort
from src.domain.services.audit_record_builder import AuditRecordBuilder
from src.domain.services.row_resolver import RowResolver
from src.infrastructure.audit.transaction_coordinator import TransactionCoordinator

logger = logging.getLogger(__name__)

R = TypeVar('R')


class ChangeAuditLogger:
    """Pipeline facade turning detected mutations into audit records.

    Parameters:
        resolver: Completes before/after snapshots
        builder: Applies table/column policy and builds records
        coordinator: Buffers records per transaction
        metrics: Pipeline counters
        detector: Optional detector used by audit_entity()

    Example Usage:
        ```python
        descriptor = ChangeDescriptor(
            table_name="accounts",
            operation=OperationType.UPDATE,
            predicate="id = 7",
            after_data={"balance": 150},
        )
        audit_logger.audit(
            descriptor,
            lambda: conn.execute("UPDATE accounts SET balance = 150 WHERE id = 7"),
        )
        ```
    """

    def __init__(
        self,
        resolver: RowResolver,
        builder: AuditRecordBuilder,
        coordinator: TransactionCoordinator,
        metrics: Optional[AuditMetrics] = None,
        detector: Optional[MutationDetectorPort] = None
    ):
        self.resolver = resolver
        self.builder = builder
        self.coordinator = coordinator
        self.metrics = metrics or AuditMetrics()
        self.detector = detector

    def before_mutation(self, descriptor: Optional[ChangeDescriptor]) -> Optional[ChangeDescriptor]:
        """Capture pre-execution state.

        Returns:
            The prepared descriptor to pass to after_mutation(), or None when
            the table is not audited or preparation failed
        """
        if descriptor is None:
            return None
        try:
            if not self.builder.should_audit(descriptor.table_name):
                self.metrics.increment("records_skipped")
                logger.debug(f"Not auditing {descriptor.operation.value} on {descriptor.table_name}")
                return None
            return self.resolver.prepare(descriptor)
        except Exception as e:
            logger.warning(
                f"Dropping {descriptor.operation.value} on {descriptor.table_name} from auditing: {str(e)}",
                exc_info=True
            )
            return None

    def after_mutation(
        self,
        prepared: Optional[ChangeDescriptor],
        generated_keys: Optional[dict[str, Any]] = None
    ) -> Optional[AuditRecord]:
        """Resolve post-execution state, build the record and hand it on.

        Parameters:
            prepared: Descriptor returned by before_mutation()
            generated_keys: Keys produced by the execution (e.g. RETURNING id)

        Returns:
            The AuditRecord handed to the coordinator, or None
        """
        if prepared is None:
            return None
        try:
            resolved = self.resolver.complete(prepared, generated_keys)
        except Exception as e:
            logger.warning(f"After-snapshot resolution failed for {prepared.table_name}: {str(e)}", exc_info=True)
            self.metrics.increment("resolution_failures")
            resolved = prepared.with_note("after snapshot unavailable: resolution failed")
        return self.log_change(resolved)

    def log_change(self, descriptor: ChangeDescriptor) -> Optional[AuditRecord]:
        """Build and record an audit record from already-resolved snapshots.

        Used directly by detectors that see complete rows (e.g. trigger-fed
        change streams), and by after_mutation().
        """
        try:
            record = self.builder.build(descriptor)
            if record is None:
                self.metrics.increment("records_skipped")
                return None
            self.coordinator.record(record)
            return record
        except Exception as e:
            logger.error(f"Failed to record audit entry for {descriptor.table_name}: {str(e)}", exc_info=True)
            return None

    def audit(
        self,
        descriptor: Optional[ChangeDescriptor],
        execute: Callable[[], R],
        generated_keys_from_result: Optional[Callable[[R], Optional[dict[str, Any]]]] = None
    ) -> R:
        """Run a mutation with auditing around it.

        Parameters:
            descriptor: Detected mutation (None runs execute unaudited)
            execute: The business operation
            generated_keys_from_result: Extracts generated keys from the
                operation's return value

        Returns:
            Whatever execute() returns
        """
        prepared = self.before_mutation(descriptor)
        result = execute()

        generated_keys = None
        if prepared is not None and generated_keys_from_result is not None:
            try:
                generated_keys = generated_keys_from_result(result)
            except Exception as e:
                logger.warning(f"Could not read generated keys for {prepared.table_name}: {str(e)}")
        self.after_mutation(prepared, generated_keys)
        return result

    def audit_entity(
        self,
        entity: Any,
        operation: OperationType,
        execute: Callable[[], R],
        generated_keys_from_result: Optional[Callable[[R], Optional[dict[str, Any]]]] = None
    ) -> R:
        """Run an entity persist/merge/remove with auditing around it."""
        descriptor = None
        if self.detector is None:
            logger.warning("audit_entity called without a mutation detector; not auditing")
        else:
            try:
                descriptor = self.detector.detect(entity, operation)
            except DetectionError as e:
                logger.warning(f"Mutation detection failed for {type(entity).__name__}: {str(e)}")
            except Exception as e:
                logger.warning(f"Mutation detection failed for {type(entity).__name__}: {str(e)}", exc_info=True)
        return self.audit(descriptor, execute, generated_keys_from_result)

    def get_statistics(self) -> dict:
        stats = self.metrics.get_statistics()
        stats['pending_records'] = self.coordinator.pending_count()
        stats['dead_letters'] = self.coordinator.writer.dead_letter_count
        return stats

    def shutdown(self, grace_period: float = 5.0) -> None:
        """Discard unfinished buffers and wait for in-flight writes."""
        try:
            self.coordinator.shutdown(grace_period)
        except Exception as e:
            logger.error(f"Audit pipeline shutdown failed: {str(e)}", exc_info=True)
