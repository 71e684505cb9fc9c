"""
Typed Exception Hierarchy for the Stock Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the ledger (order fulfilment, goods receipt, stocktake completion,
manual corrections) must be able to tell a caller bug from a retryable
contention problem without parsing messages. Every error therefore:

  1. Has its own exception CLASS (catch by type, not message)
  2. Carries a CODE class attribute (machine-readable, API-safe)
  3. Stores its context as attributes (not just a message string)

Example:
    try:
        runner.append_movement(request)
    except TransientConflict as e:
        requeue(request, attempts=e.attempts)
    except InvalidLocationReference as e:
        reject(e.code, e.reason)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    StockLedgerError (base)
    |
    +-- LocationError
    |   +-- InvalidLocationReference
    |   +-- LocationNotFound
    |
    +-- MovementError
    |   +-- ProductNotFound
    |   +-- MovementNotFound
    |   +-- InvalidMovementQuantity
    |   +-- InvalidMovementSnapshot
    |   +-- MovementPayloadMismatch
    |   +-- NegativeStockNotAllowed
    |
    +-- ConcurrencyError
    |   +-- TransientConflict
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- BatchError
    |   +-- BatchNotFound
    |   +-- InvalidBatchIdentity
    |   +-- BatchQuantityExceeded
    |
    +-- ReconciliationError
        +-- StocktakeNotFound
        +-- ReconciliationStocktakeNotActive
        +-- CountingProcessAlreadyExists
        +-- DuplicateCountedProduct
        +-- ValuationReportNotFound
        +-- ValuationReportOutdated
        +-- ValuationReportNotDeletable

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                            | When Raised
----------------|---------------------------------|---------------------------------------
Location        | INVALID_LOCATION_REFERENCE      | Discriminator count/kind mismatch
                | LOCATION_NOT_FOUND              | Warehouse or bin location missing
----------------|---------------------------------|---------------------------------------
Movement        | PRODUCT_NOT_FOUND               | Unknown (product, version) reference
                | MOVEMENT_NOT_FOUND              | Movement id does not exist
                | INVALID_MOVEMENT_QUANTITY       | Quantity is not a positive integer
                | INVALID_MOVEMENT_SNAPSHOT       | Snapshot not JSON or empty
                | MOVEMENT_PAYLOAD_MISMATCH       | Same movement id, different payload
                | NEGATIVE_STOCK_NOT_ALLOWED      | Policy forbids negative physical stock
----------------|---------------------------------|---------------------------------------
Concurrency     | TRANSIENT_CONFLICT              | Retries exhausted on contention
----------------|---------------------------------|---------------------------------------
Immutability    | IMMUTABILITY_VIOLATION          | Update/delete of an append-only row
----------------|---------------------------------|---------------------------------------
Batch           | BATCH_NOT_FOUND                 | Batch id does not exist
                | INVALID_BATCH_IDENTITY          | Neither number nor best-before date
                | BATCH_QUANTITY_EXCEEDED         | Allocation exceeds available quantity
----------------|---------------------------------|---------------------------------------
Reconciliation  | STOCKTAKE_NOT_FOUND             | Stocktake id does not exist
                | STOCKTAKE_NOT_ACTIVE            | Mutation of a completed stocktake
                | COUNTING_PROCESS_ALREADY_EXISTS | Bin location counted twice
                | DUPLICATE_COUNTED_PRODUCT       | Product twice in one submission
                | VALUATION_REPORT_NOT_FOUND      | Report id does not exist
                | VALUATION_REPORT_OUTDATED       | A younger report already exists
                | VALUATION_REPORT_NOT_DELETABLE  | Report is not the newest one

===============================================================================
HANDLING PATTERNS
===============================================================================

1. ONLY ConcurrencyError IS RETRYABLE. Everything else is a caller bug or a
   business-rule violation and must be surfaced.

2. IDEMPOTENT RE-SUBMISSION IS NOT AN ERROR. Re-appending a movement with
   the same id and payload returns the id; only a payload mismatch raises.

3. RECONCILIATION ERRORS NEVER MUTATE THE LEDGER, so a failed report or
   stocktake call can always be repeated from scratch.

===============================================================================
"""


class StockLedgerError(Exception):
    """
    Base exception for all stock kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "STOCK_LEDGER_ERROR"


# Location-related exceptions


class LocationError(StockLedgerError):
    """Base exception for location-related errors."""

    code: str = "LOCATION_ERROR"


class InvalidLocationReference(LocationError):
    """
    A stock location reference is malformed.

    Raised when zero or more than one discriminator is populated, when the
    populated discriminator does not belong to the kind tag, or when the
    kind / special location name is not part of the closed vocabulary.
    This is always a caller bug and is never retried.
    """

    code: str = "INVALID_LOCATION_REFERENCE"

    def __init__(self, kind: str | None, reason: str, populated: tuple[str, ...] = ()):
        self.kind = kind
        self.reason = reason
        self.populated = populated
        super().__init__(f"Invalid stock location reference ({kind}): {reason}")


class LocationNotFound(LocationError):
    """A referenced warehouse or bin location does not exist."""

    code: str = "LOCATION_NOT_FOUND"

    def __init__(self, location_kind: str, location_id: str):
        self.location_kind = location_kind
        self.location_id = location_id
        super().__init__(f"{location_kind} not found: {location_id}")


# Movement-related exceptions


class MovementError(StockLedgerError):
    """Base exception for movement ledger errors."""

    code: str = "MOVEMENT_ERROR"


class ProductNotFound(MovementError):
    """The (product id, product version id) reference does not exist."""

    code: str = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: str, product_version_id: str | None = None):
        self.product_id = product_id
        self.product_version_id = product_version_id
        super().__init__(
            f"Product not found: {product_id} (version {product_version_id})"
        )


class MovementNotFound(MovementError):
    """No ledger row has the given movement id."""

    code: str = "MOVEMENT_NOT_FOUND"

    def __init__(self, movement_id: str):
        self.movement_id = movement_id
        super().__init__(f"Stock movement not found: {movement_id}")


class InvalidMovementQuantity(MovementError):
    """Movement quantities are positive integers at the ledger boundary."""

    code: str = "INVALID_MOVEMENT_QUANTITY"

    def __init__(self, quantity: object):
        self.quantity = quantity
        super().__init__(
            f"Movement quantity must be a positive integer, got {quantity!r}"
        )


class InvalidMovementSnapshot(MovementError):
    """A location snapshot is not valid JSON or is empty for a physical location."""

    code: str = "INVALID_MOVEMENT_SNAPSHOT"

    def __init__(self, location_key: str, reason: str):
        self.location_key = location_key
        self.reason = reason
        super().__init__(f"Invalid snapshot for {location_key}: {reason}")


class MovementPayloadMismatch(MovementError):
    """
    Movement id already exists with a different payload.

    Movements are immutable; re-submitting an id is only allowed with an
    identical payload (idempotent retry).
    """

    code: str = "MOVEMENT_PAYLOAD_MISMATCH"

    def __init__(self, movement_id: str, expected_hash: str, received_hash: str):
        self.movement_id = movement_id
        self.expected_hash = expected_hash
        self.received_hash = received_hash
        super().__init__(
            f"Payload mismatch for movement {movement_id}: "
            f"expected {expected_hash}, received {received_hash}"
        )


class NegativeStockNotAllowed(MovementError):
    """The configured policy forbids negative stock at physical locations."""

    code: str = "NEGATIVE_STOCK_NOT_ALLOWED"

    def __init__(self, product_id: str, location_key: str, resulting_quantity: int):
        self.product_id = product_id
        self.location_key = location_key
        self.resulting_quantity = resulting_quantity
        super().__init__(
            f"Movement would leave product {product_id} at {location_key} "
            f"with negative stock {resulting_quantity}"
        )


# Concurrency exceptions


class ConcurrencyError(StockLedgerError):
    """Base exception for concurrency errors. Safe to retry."""

    code: str = "CONCURRENCY_ERROR"


class TransientConflict(ConcurrencyError):
    """
    Contention on the projection could not be resolved within the retry budget.

    The transaction was rolled back; nothing was written. Safe to retry
    with backoff.
    """

    code: str = "TRANSIENT_CONFLICT"

    def __init__(self, attempts: int, reason: str):
        self.attempts = attempts
        self.reason = reason
        super().__init__(
            f"Transient conflict after {attempts} attempt(s): {reason}"
        )


# Immutability exceptions


class ImmutabilityError(StockLedgerError):
    """Base exception for immutability violations."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify {entity_type} {entity_id}: {reason}"
        )


# Batch exceptions


class BatchError(StockLedgerError):
    """Base exception for batch/lot tracking errors."""

    code: str = "BATCH_ERROR"


class BatchNotFound(BatchError):
    """Batch with given ID was not found."""

    code: str = "BATCH_NOT_FOUND"

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(f"Batch not found: {batch_id}")


class InvalidBatchIdentity(BatchError):
    """A batch needs a number or a best-before date to be addressable."""

    code: str = "INVALID_BATCH_IDENTITY"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(
            f"Batch for product {product_id} needs a number or a best-before date"
        )


class BatchQuantityExceeded(BatchError):
    """
    A batch allocation exceeds the quantity available for it.

    Business-rule violation; surfaced to the caller, never retried.
    """

    code: str = "BATCH_QUANTITY_EXCEEDED"

    def __init__(
        self,
        batch_id: str,
        location_key: str | None,
        requested: int,
        available: int,
    ):
        self.batch_id = batch_id
        self.location_key = location_key
        self.requested = requested
        self.available = available
        super().__init__(
            f"Batch {batch_id} allocation of {requested} exceeds available "
            f"{available} at {location_key}"
        )


# Reconciliation exceptions


class ReconciliationError(StockLedgerError):
    """Base exception for stocktaking and valuation errors."""

    code: str = "RECONCILIATION_ERROR"


class StocktakeNotFound(ReconciliationError):
    """Stocktake with given ID was not found."""

    code: str = "STOCKTAKE_NOT_FOUND"

    def __init__(self, stocktake_id: str):
        self.stocktake_id = stocktake_id
        super().__init__(f"Stocktake not found: {stocktake_id}")


class ReconciliationStocktakeNotActive(ReconciliationError):
    """Attempted mutation of a completed stocktake."""

    code: str = "STOCKTAKE_NOT_ACTIVE"

    def __init__(self, stocktake_id: str, title: str | None = None):
        self.stocktake_id = stocktake_id
        self.title = title
        super().__init__(f"Stocktake {title or stocktake_id} is not active")


class CountingProcessAlreadyExists(ReconciliationError):
    """A bin location has already been counted in this stocktake."""

    code: str = "COUNTING_PROCESS_ALREADY_EXISTS"

    def __init__(self, stocktake_id: str, bin_location_id: str):
        self.stocktake_id = stocktake_id
        self.bin_location_id = bin_location_id
        super().__init__(
            f"Bin location {bin_location_id} was already counted in stocktake {stocktake_id}"
        )


class DuplicateCountedProduct(ReconciliationError):
    """A product appears more than once in one counting submission."""

    code: str = "DUPLICATE_COUNTED_PRODUCT"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product {product_id} is counted more than once")


class ValuationReportNotFound(ReconciliationError):
    """Valuation report with given ID was not found."""

    code: str = "VALUATION_REPORT_NOT_FOUND"

    def __init__(self, report_id: str):
        self.report_id = report_id
        super().__init__(f"Valuation report not found: {report_id}")


class ValuationReportOutdated(ReconciliationError):
    """A report for a later reporting time already exists for the warehouse."""

    code: str = "VALUATION_REPORT_OUTDATED"

    def __init__(self, warehouse_id: str, reporting_time: str, younger_report_id: str):
        self.warehouse_id = warehouse_id
        self.reporting_time = reporting_time
        self.younger_report_id = younger_report_id
        super().__init__(
            f"Warehouse {warehouse_id} already has report {younger_report_id} "
            f"newer than {reporting_time}"
        )


class ValuationReportNotDeletable(ReconciliationError):
    """Only the newest report of a warehouse may be deleted."""

    code: str = "VALUATION_REPORT_NOT_DELETABLE"

    def __init__(self, report_id: str, newest_report_id: str):
        self.report_id = report_id
        self.newest_report_id = newest_report_id
        super().__init__(
            f"Report {report_id} cannot be deleted; newest report is {newest_report_id}"
        )
