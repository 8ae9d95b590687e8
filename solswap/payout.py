"""Bank-detail parsing and payout provider adapters.

Provider wire protocols are outside this service; the Paystack and Flutterwave
adapters below record the recipient/transfer calls the payout flow makes and
return queued results, so a real HTTP integration only replaces their bodies.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional, Protocol

from .utils import mask_digits

logger = logging.getLogger("solswap.payout")

# NUBAN account number (10 digits) followed by a 3-6 digit bank code.
BANK_DETAILS_RE = re.compile(r"(?<!\d)(\d{10})(?!\d)\s*[:/,\-\s]\s*(?:bank\s*code\s*)?(\d{3,6})(?!\d)", re.IGNORECASE)
ACCOUNT_NUMBER_RE = re.compile(r"(?<!\d)\d{10}(?!\d)")


@dataclass(frozen=True)
class BankAccount:
    account_number: str
    bank_code: str

    def as_stored(self) -> str:
        return f"{self.account_number}:{self.bank_code}"


@dataclass(frozen=True)
class PayoutResult:
    reference: str
    status: str  # queued | success | failed


def parse_bank_account(raw: str) -> Optional[BankAccount]:
    """Purpose: Extract a NUBAN account number and bank code from free text.
    Inputs/Outputs: Input is text such as "0123456789:058" or
        "acct 0123456789, bank code 058"; output is a BankAccount or None.
    Side Effects / State: None.
    Dependencies: Uses BANK_DETAILS_RE.
    Failure Modes: Returns None for anything that is not a 10-digit account number
        followed by a 3-6 digit bank code.
    If Removed: Orders could reach ready_to_pay with unusable bank details.
    Testing Notes: Nine-digit numbers and missing bank codes must return None.
    """
    # Search rather than match so the details can sit inside a sentence.
    match = BANK_DETAILS_RE.search(raw or "")
    if not match:
        return None
    return BankAccount(account_number=match.group(1), bank_code=match.group(2))


def has_bank_details_marker(text: str) -> bool:
    return bool(ACCOUNT_NUMBER_RE.search(text or ""))


class PayoutProvider(Protocol):
    name: str

    def create_recipient(self, account: BankAccount) -> str:
        ...

    def initiate_transfer(self, recipient_code: str, amount_kobo: int, reference: str, narration: str) -> PayoutResult:
        ...


class PaystackProvider:
    name = "paystack"

    def create_recipient(self, account: BankAccount) -> str:
        logger.info("provider=paystack recipient account=%s", mask_digits(account.account_number))
        return f"PS_RECIP_{account.account_number}_{account.bank_code}"

    def initiate_transfer(self, recipient_code: str, amount_kobo: int, reference: str, narration: str) -> PayoutResult:
        logger.info("provider=paystack transfer reference=%s amount_kobo=%s", reference, amount_kobo)
        return PayoutResult(reference=f"PS_{reference}", status="queued")


class FlutterwaveProvider:
    name = "flutterwave"

    def create_recipient(self, account: BankAccount) -> str:
        logger.info("provider=flutterwave beneficiary account=%s", mask_digits(account.account_number))
        return f"FW_RECIP_{account.account_number}_{account.bank_code}"

    def initiate_transfer(self, recipient_code: str, amount_kobo: int, reference: str, narration: str) -> PayoutResult:
        logger.info("provider=flutterwave transfer reference=%s amount_kobo=%s", reference, amount_kobo)
        return PayoutResult(reference=f"FW_{reference}", status="queued")


def get_payout_provider(name: str) -> PayoutProvider:
    if name == "flutterwave":
        return FlutterwaveProvider()
    return PaystackProvider()
