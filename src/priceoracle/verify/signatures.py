"""Signature verification for contributions."""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import re
from dataclasses import dataclass, field
from typing import Any

import structlog

from priceoracle.contributions.schemas import CONTENT_REF_FIELDS, Contribution
from priceoracle.ledger.client import LedgerClient

logger = structlog.get_logger()

_HEX_RE = re.compile(r"^(0x)?[0-9a-fA-F]+$")


@dataclass(frozen=True)
class VerificationResult:
    verified: list[Contribution] = field(default_factory=list)
    rejected: int = 0


def canonical_payload(raw: dict[str, Any]) -> bytes:
    """Serialize the signed fields deterministically.

    The signature itself and any storage-assigned content reference are
    removed, since neither existed when the author signed.
    """
    signed = {key: value for key, value in raw.items() if key != "signature" and key not in CONTENT_REF_FIELDS}
    return json.dumps(signed, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def is_well_formed_signature(signature: str) -> bool:
    if not signature or not signature.strip():
        return False
    if _HEX_RE.match(signature):
        return True
    try:
        base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError):
        return False
    return True


class SignatureVerifier:
    def __init__(self, ledger: LedgerClient, *, timeout_seconds: float = 10.0) -> None:
        self._ledger = ledger
        self._timeout_seconds = timeout_seconds

    async def verify(self, contribution: Contribution) -> bool:
        """Return True only when the ledger confirms the author's signature; never raises."""
        author = contribution.author_address
        signature = contribution.signature
        if not signature or not author:
            logger.warning("Contribution missing signature or author", content_ref=contribution.content_ref)
            return False
        if not is_well_formed_signature(signature):
            logger.warning("Malformed signature", author=author, content_ref=contribution.content_ref)
            return False

        raw = contribution.raw or contribution.model_dump(by_alias=False, exclude_none=True)
        try:
            valid = await asyncio.wait_for(
                self._ledger.verify_signature(canonical_payload(raw), signature, author),
                timeout=self._timeout_seconds,
            )
        except Exception as e:
            logger.warning("Signature check failed", author=author, content_ref=contribution.content_ref, error=repr(e))
            return False

        if not valid:
            logger.warning("Invalid signature", author=author, content_ref=contribution.content_ref)
        return bool(valid)

    async def verify_all(self, contributions: list[Contribution]) -> VerificationResult:
        results = await asyncio.gather(*(self.verify(contribution) for contribution in contributions))
        verified = [contribution for contribution, ok in zip(contributions, results) if ok]
        rejected = len(contributions) - len(verified)

        if rejected:
            logger.warning("Rejected contributions with invalid signatures", rejected=rejected)
        logger.info("Verified contributions", verified=len(verified), total=len(contributions))
        return VerificationResult(verified=verified, rejected=rejected)
