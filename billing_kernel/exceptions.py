"""
Typed Exception Hierarchy for the Billing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Money-moving code must report failures precisely.  Callers decide what to do
(show a form error, return 404, offer a retry) by exception TYPE and by the
machine-readable ``code`` attribute, never by parsing the message string.

Every exception:
  1. Has a TYPED class (catch by type, not message)
  2. Has a CODE class attribute (machine-readable, API-safe)
  3. Carries structured DATA as attributes (not just a message string)

Example:
    try:
        ledger.return_advance(contract_id, actor_id=actor)
    except AdvanceNotHeldError as e:
        api_response(code=e.code, advance_status=e.advance_status)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BillingKernelError (base)
    |
    +-- ValidationError
    |
    +-- NotFoundError
    |   +-- InvoiceNotFoundError
    |   +-- ContractNotFoundError
    |
    +-- InvalidStateError
    |   +-- AdvanceNotHeldError
    |   +-- ContractNotActiveError
    |   +-- UnbalancedInvoiceError
    |
    +-- ConcurrencyConflictError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                   | When Raised
----------------|------------------------|---------------------------------------
Validation      | VALIDATION_ERROR       | Bad amount, empty customer key,
                |                        | invalid invoice/contract fields
----------------|------------------------|---------------------------------------
Not found       | INVOICE_NOT_FOUND      | Invoice missing or outside account
                | CONTRACT_NOT_FOUND     | Contract missing or outside account
----------------|------------------------|---------------------------------------
State           | ADVANCE_NOT_HELD       | Advance already returned
                | CONTRACT_NOT_ACTIVE    | Contract completed or cancelled
                | UNBALANCED_INVOICE     | Stored paid + pending != total;
                |                        | allocation refused, nothing applied
----------------|------------------------|---------------------------------------
Concurrency     | CONCURRENCY_CONFLICT   | Lock timeout or stale row version;
                |                        | nothing was applied, safe to retry

===============================================================================
HANDLING PATTERNS
===============================================================================

1. CATCH SPECIFIC EXCEPTIONS:

    except ContractNotActiveError as e:
        notify_user(f"Contract is {e.contract_status}")
    except InvalidStateError as e:
        log.error("advance_return_rejected", extra={"code": e.code})

2. CONCURRENCY CONFLICTS ARE SAFE TO RETRY, ALLOCATIONS ARE NOT IDEMPOTENT:

    A ConcurrencyConflictError guarantees that nothing was committed, so the
    caller may retry once it has decided the payment really was not applied.
    A *successful* allocate must never be replayed: applying the same payment
    twice credits the customer twice.
"""


class BillingKernelError(Exception):
    """
    Base exception for all billing kernel errors.

    All subclasses must have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "BILLING_KERNEL_ERROR"


class ValidationError(BillingKernelError):
    """Input rejected before any state was touched."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


# Lookup failures


class NotFoundError(BillingKernelError):
    """Base exception for missing (or out-of-scope) records."""

    code: str = "NOT_FOUND"


class InvoiceNotFoundError(NotFoundError):
    """Invoice does not exist within the caller's account."""

    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


class ContractNotFoundError(NotFoundError):
    """Contract does not exist within the caller's account."""

    code: str = "CONTRACT_NOT_FOUND"

    def __init__(self, contract_id: str):
        self.contract_id = contract_id
        super().__init__(f"Contract not found: {contract_id}")


# State machine violations


class InvalidStateError(BillingKernelError):
    """Base exception for transitions attempted from the wrong state."""

    code: str = "INVALID_STATE"


class AdvanceNotHeldError(InvalidStateError):
    """The contract's advance is no longer held (already returned)."""

    code: str = "ADVANCE_NOT_HELD"

    def __init__(self, contract_id: str, advance_status: str):
        self.contract_id = contract_id
        self.advance_status = advance_status
        super().__init__(
            f"Advance for contract {contract_id} is {advance_status}, not held"
        )


class ContractNotActiveError(InvalidStateError):
    """The contract has already been completed or cancelled."""

    code: str = "CONTRACT_NOT_ACTIVE"

    def __init__(self, contract_id: str, contract_status: str):
        self.contract_id = contract_id
        self.contract_status = contract_status
        super().__init__(
            f"Contract {contract_id} is {contract_status}, not active"
        )


class UnbalancedInvoiceError(InvalidStateError):
    """A stored invoice's paid and pending amounts do not add up to its total."""

    code: str = "UNBALANCED_INVOICE"

    def __init__(
        self,
        invoice_id: str,
        total_amount: str,
        amount_paid: str,
        amount_pending: str,
    ):
        self.invoice_id = invoice_id
        self.total_amount = total_amount
        self.amount_paid = amount_paid
        self.amount_pending = amount_pending
        super().__init__(
            f"Invoice {invoice_id} is unbalanced: paid {amount_paid} + "
            f"pending {amount_pending} != total {total_amount}"
        )


# Concurrency


class ConcurrencyConflictError(BillingKernelError):
    """
    A concurrent mutation invalidated the operation's read snapshot.

    Raised when the per-key lock cannot be acquired in time or when a row
    version changed underneath the operation.  The transaction has been
    rolled back; no partial result was applied.
    """

    code: str = "CONCURRENCY_CONFLICT"

    def __init__(self, entity_type: str, entity_key: str, reason: str = "modified concurrently"):
        self.entity_type = entity_type
        self.entity_key = entity_key
        self.reason = reason
        super().__init__(
            f"Concurrency conflict on {entity_type} {entity_key}: {reason}"
        )
