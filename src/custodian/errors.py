"""
Custodian error types.

Custody-layer failures (escrow, quote generation, configuration) are raised
as the exceptions below. Validation-layer failures (policy reservation,
quote verification, commitment verification, paymaster signature checks)
are returned as typed results instead, so callers can branch on them
without exception handling.

Every error carries a machine-readable ``code`` so the HTTP and CLI
surfaces can report the precise rule that failed.
"""


class CustodianError(Exception):
    """Base error for all Custodian operations."""

    code = "CUSTODIAN_ERROR"


class ConfigError(CustodianError):
    """Required configuration is missing or malformed."""

    code = "CONFIG_ERROR"


class InvalidAmountError(CustodianError):
    """Amount must be strictly positive (and, for fiat, exact to the cent)."""

    code = "INVALID_AMOUNT"

    def __init__(self, amount, requirement: str = "must be > 0"):
        self.amount = amount
        super().__init__(f"Amount {requirement}, got {amount}")


# Escrow errors
class EscrowError(CustodianError):
    """Base error for escrow state machine violations."""

    code = "ESCROW_ERROR"


class EscrowAlreadyFundedError(EscrowError):
    """Deposit attempted on a key that already left the Empty state."""

    code = "ESCROW_ALREADY_FUNDED"

    def __init__(self, scope_id: str):
        self.scope_id = scope_id
        super().__init__(f"Escrow for {scope_id} is already funded")


class EscrowInvalidStateError(EscrowError):
    """Transition is not allowed from the escrow's current state."""

    code = "ESCROW_INVALID_STATE"

    def __init__(self, scope_id: str, state: str, action: str):
        self.scope_id = scope_id
        self.state = state
        self.action = action
        super().__init__(f"Cannot {action} escrow {scope_id} in state {state}")


class NotAuthorizedError(EscrowError):
    """Caller is not permitted to perform the transition."""

    code = "NOT_AUTHORIZED"

    def __init__(self, caller: str, action: str):
        self.caller = caller
        self.action = action
        super().__init__(f"{caller} is not authorized to {action}")


class QuoteRejectedError(EscrowError):
    """A quote attached to a deposit failed its point-of-use checks."""

    code = "QUOTE_REJECTED"


# Value transfer errors
class TransferError(CustodianError):
    """A value transfer on the settlement ledger failed."""

    code = "TRANSFER_FAILED"


class InsufficientBalanceError(TransferError):
    """Source account cannot cover the transfer."""

    def __init__(self, account: str, asset: str, amount: int, balance: int):
        self.account = account
        self.asset = asset
        self.amount = amount
        self.balance = balance
        super().__init__(f"{account} holds {balance} of {asset}, needs {amount}")


class AllowanceError(TransferError):
    """Spender has not been approved for enough of the owner's tokens."""

    code = "ALLOWANCE_TOO_LOW"

    def __init__(self, owner: str, spender: str, required: int, allowance: int):
        self.owner = owner
        self.spender = spender
        self.required = required
        self.allowance = allowance
        super().__init__(
            f"Allowance {allowance} from {owner} to {spender} is below required {required}"
        )


# Quote errors
class UnsupportedCurrencyError(CustodianError):
    """No exchange rate is configured for the fiat currency."""

    code = "UNSUPPORTED_CURRENCY"


class UnsupportedAssetError(CustodianError):
    """Settlement asset is not known to the quote service."""

    code = "UNSUPPORTED_ASSET"


# Audit log service errors
class LogServiceError(CustodianError):
    """The public append-only log rejected or failed a request."""

    code = "LOG_SERVICE_ERROR"
