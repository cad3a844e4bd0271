# bulk_intake.py
"""
Bulk intake: decode an uploaded contact list and fan out an opening message.

Every contact gets a freshly seeded transcript (one system turn holding the
template) and a personalised greeting. Rows are processed one after another;
a failing row is logged and recorded, it never stops the rest.
"""
from __future__ import annotations

import csv
import logging
import re
from typing import Any, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from transcript_store import SYSTEM_ROLE, KeyedLocks, Turn
from whatsapp_session import to_chat_id

logger = logging.getLogger("bulk_intake")

REQUIRED_COLUMNS = ("phone_number", "firstname", "lastname", "company_name")
_NON_DIGITS = re.compile(r"\D")
INVALID_PHONE = "invalid phone number"


class ContactListError(ValueError):
    """The uploaded contact list could not be decoded."""


class ContactRow(BaseModel):
    phone_number: str
    firstname: str
    lastname: str
    company_name: str

    @field_validator("firstname", "lastname", "company_name")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()


class RowResult(BaseModel):
    phone: str
    ok: bool
    error: Optional[str] = None


class BulkResult(BaseModel):
    rows: List[RowResult] = Field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.rows)

    @property
    def sent(self) -> int:
        return sum(1 for row in self.rows if row.ok)

    @property
    def failed(self) -> List[RowResult]:
        return [row for row in self.rows if not row.ok]

    def summary(self) -> dict:
        return {"attempted": self.attempted, "sent": self.sent, "failed": len(self.failed), "rows": [row.model_dump() for row in self.rows]}


def normalize_phone(raw: str) -> str:
    return _NON_DIGITS.sub("", raw or "")


def compose_greeting(contact: ContactRow, template: str) -> str:
    return f"Hello {contact.firstname} {contact.lastname} from {contact.company_name}, {template}"


def read_contacts(path: str) -> List[ContactRow]:
    """Decode a CSV file with a header row into ContactRows."""
    contacts: List[ContactRow] = []
    try:
        with open(path, newline="", encoding="utf-8-sig") as fh:
            reader = csv.DictReader(fh)
            header = reader.fieldnames or []
            missing = [column for column in REQUIRED_COLUMNS if column not in header]
            if missing:
                raise ContactListError(f"Missing column(s): {', '.join(missing)}")
            for line_no, record in enumerate(reader, start=2):
                if None in record or any(value is None for value in record.values()):
                    raise ContactListError(f"Invalid record length on line {line_no}: expected {len(header)} columns")
                try:
                    contacts.append(ContactRow(**{column: record[column] for column in REQUIRED_COLUMNS}))
                except ValidationError as exc:
                    raise ContactListError(f"Invalid record on line {line_no}: {exc}") from exc
    except (csv.Error, UnicodeDecodeError) as exc:
        raise ContactListError(str(exc)) from exc
    return contacts


class BulkIntake:
    def __init__(self, store: Any, session: Any, locks: Optional[KeyedLocks] = None):
        self.store = store
        self.session = session
        self.locks = locks or KeyedLocks()

    def send_one(self, contact: ContactRow, template: str) -> RowResult:
        phone = normalize_phone(contact.phone_number)
        if not phone:
            # an empty key would address the whole namespace
            logger.error("Skipping contact with invalid phone number %r", contact.phone_number)
            return RowResult(phone=phone, ok=False, error=INVALID_PHONE)
        try:
            with self.locks.hold(phone):
                self.store.save(phone, [Turn(SYSTEM_ROLE, template)])
            self.session.send(to_chat_id(phone), compose_greeting(contact, template))
        except Exception as exc:
            logger.error("Error sending message to %s: %s", phone, exc)
            return RowResult(phone=phone, ok=False, error=str(exc))
        return RowResult(phone=phone, ok=True)

    def run(self, contacts: List[ContactRow], template: str) -> BulkResult:
        result = BulkResult()
        for contact in contacts:
            result.rows.append(self.send_one(contact, template))
        logger.info("Bulk intake attempted=%s sent=%s failed=%s", result.attempted, result.sent, len(result.failed))
        return result
