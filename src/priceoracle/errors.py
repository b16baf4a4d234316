"""Exception hierarchy shared across the pipeline."""


class PriceOracleError(RuntimeError):
    """Base class for pipeline errors."""


class BlobStoreError(PriceOracleError):
    """Raised when a blob cannot be read from any transport."""


class BlobNotFoundError(BlobStoreError):
    """Raised when every transport reports the blob as missing."""


class BlobReadError(BlobStoreError):
    """Raised when a transport fails for a reason other than a missing blob."""


class LedgerError(PriceOracleError):
    """Raised when the ledger gateway rejects or fails a call."""


class AttestationError(PriceOracleError):
    """Raised when the attestation enclave cannot produce a record."""


class ContributionDecodeError(PriceOracleError):
    """Raised when blob bytes do not decode to a known contribution."""


class PriceDerivationError(PriceOracleError):
    """Raised when price math produces an unusable value."""
