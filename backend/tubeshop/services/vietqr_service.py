# Overview: VietQR payloads and QR image links for bank transfer deposits.

"""
VietQR Bank Transfer Payloads

Bank transfer deposits are matched by memo (RTB-<order code>). The QR code
carries the shop account, the exact deposit amount and that memo, so the
customer's banking app pre-fills all three.

PAYLOAD (EMVCo merchant-presented QR, NAPAS profile), TLV fields in order:
    00  payload format indicator "01"
    01  initiation method "12" (dynamic: one fixed amount)
    38  merchant account: 00 NAPAS GUID, 01 bank BIN + account number
    53  currency "704" (VND)
    54  amount
    58  country "VN"
    62  additional data: 08 reference label = memo
    63  CRC-16/CCITT-FALSE over everything before it, including "6304"

The image link points at the public VietQR renderer; qrContent is the raw
string for clients that draw the code themselves.
"""

from __future__ import annotations

import binascii
import re
import unicodedata
from dataclasses import dataclass
from urllib.parse import urlencode

from flask import current_app

from ..models import Order


NAPAS_GUID = "A000000727"
CURRENCY_VND = "704"
COUNTRY_VN = "VN"
MEMO_PREFIX = "RTB-"

BANK_BINS = {
    "vietcombank": "970436",
    "vietinbank": "970415",
    "bidv": "970418",
    "techcombank": "970407",
    "mbbank": "970422",
    "acb": "970416",
    "vpbank": "970432",
    "sacombank": "970403",
    "tpbank": "970423",
    "hdbank": "970437",
    "ocb": "970448",
    "scb": "970429",
    "shb": "970443",
    "eximbank": "970431",
    "msb": "970426",
    "vib": "970441",
    "seabank": "970440",
    "namabank": "970428",
    "baoviet": "970438",
    "pvcombank": "970412",
    "lienviet": "970449",
    "abbank": "970425",
    "kienlongbank": "970452",
    "bacabank": "970409",
    "vietabank": "970427",
    "saigonbank": "970400",
    "gpbank": "970408",
    "dong_a": "970406",
    "oceanbank": "970414",
    "cbbank": "970444",
    "woori": "970457",
}

BANK_NAMES = {
    "970436": "Vietcombank",
    "970415": "VietinBank",
    "970418": "BIDV",
    "970407": "Techcombank",
    "970422": "MB Bank",
    "970416": "ACB",
    "970432": "VPBank",
    "970403": "Sacombank",
    "970423": "TPBank",
    "970437": "HDBank",
    "970448": "OCB",
    "970429": "SCB",
    "970443": "SHB",
    "970431": "Eximbank",
    "970426": "MSB",
    "970441": "VIB",
    "970440": "SeABank",
    "970428": "Nam A Bank",
    "970438": "BaoViet Bank",
    "970412": "PVcomBank",
    "970449": "LienViet PostBank",
    "970425": "ABBank",
    "970452": "Kienlongbank",
    "970409": "Bac A Bank",
    "970427": "VietABank",
    "970400": "Saigonbank",
    "970408": "GPBank",
    "970406": "DongA Bank",
    "970414": "OceanBank",
    "970444": "CB Bank",
    "970457": "Woori Bank",
}


@dataclass(frozen=True)
class BankAccount:
    bank_bin: str
    account_number: str
    account_name: str

    @property
    def bank_name(self) -> str:
        return BANK_NAMES.get(self.bank_bin, "Unknown Bank")


def resolve_bank_bin(value: str | None) -> str | None:
    """Accepts a 6-digit BIN or a bank key such as "vietcombank"."""
    if not value:
        return None
    value = value.strip()
    if re.fullmatch(r"\d{6}", value):
        return value
    return BANK_BINS.get(value.lower())


def strip_diacritics(text: str) -> str:
    # đ has no combining decomposition
    text = text.replace("đ", "d").replace("Đ", "D")
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def transfer_memo(order_code: str) -> str:
    return MEMO_PREFIX + re.sub(r"[^A-Za-z0-9-]", "", order_code)


def crc16(data: str) -> str:
    """CRC-16/CCITT-FALSE (poly 0x1021, init 0xFFFF) as 4 uppercase hex digits."""
    return f"{binascii.crc_hqx(data.encode('utf-8'), 0xFFFF):04X}"


def _tlv(tag: str, value: str) -> str:
    if len(value) > 99:
        raise ValueError(f"VietQR field {tag} is too long ({len(value)} chars)")
    return f"{tag}{len(value):02d}{value}"


def emv_payload(account: BankAccount, *, amount: int, memo: str) -> str:
    merchant = _tlv("00", NAPAS_GUID) + _tlv("01", account.bank_bin + account.account_number)
    payload = (
        _tlv("00", "01")
        + _tlv("01", "12")
        + _tlv("38", merchant)
        + _tlv("53", CURRENCY_VND)
        + _tlv("54", str(int(amount)))
        + _tlv("58", COUNTRY_VN)
        + _tlv("62", _tlv("08", memo))
        + "6304"
    )
    return payload + crc16(payload)


def image_url(account: BankAccount, *, amount: int, memo: str) -> str:
    base = current_app.config["VIETQR_IMAGE_BASE_URL"].rstrip("/")
    template = current_app.config["VIETQR_TEMPLATE"]
    query = urlencode({
        "amount": str(int(amount)),
        "addInfo": memo,
        "accountName": strip_diacritics(account.account_name).upper(),
    })
    return f"{base}/{account.bank_bin}-{account.account_number}-{template}.png?{query}"


def configured_account() -> BankAccount | None:
    """Shop receiving account from config, or None when not set up."""
    number = (current_app.config.get("VIETQR_ACCOUNT_NUMBER") or "").strip()
    bank_bin = resolve_bank_bin(current_app.config.get("VIETQR_BANK_BIN"))
    if not number or bank_bin is None:
        return None
    return BankAccount(
        bank_bin=bank_bin,
        account_number=number,
        account_name=current_app.config.get("VIETQR_ACCOUNT_NAME") or "",
    )


def payment_details(order: Order) -> dict | None:
    """
    Transfer instructions for a bank transfer deposit order.

    None for orders paid another way, and when no receiving account is
    configured (the memo alone is still shown to the customer).
    """
    if not order.bank_transfer_memo or not order.deposit_amount:
        return None
    account = configured_account()
    if account is None:
        current_app.logger.warning("VietQR account not configured; no QR for %s", order.order_code)
        return None

    amount = int(order.deposit_amount)
    memo = order.bank_transfer_memo
    return {
        "bankBin": account.bank_bin,
        "bankName": account.bank_name,
        "accountNumber": account.account_number,
        "accountName": strip_diacritics(account.account_name).upper(),
        "amount": amount,
        "memo": memo,
        "qrContent": emv_payload(account, amount=amount, memo=memo),
        "qrImageUrl": image_url(account, amount=amount, memo=memo),
    }
