# qr_codes.py
import logging
import sqlite3
from typing import List, Optional, Union

from databases import Database
from sqlalchemy.exc import IntegrityError

from gym_scheduler.clock import Clock, SystemClock, to_storage
from gym_scheduler.data_models import QRCode
from gym_scheduler.errors import Rejection, RejectionReason, ValidationError, storage_guard
from gym_scheduler.models import qr_codes

logger = logging.getLogger(__name__)

QRCodeResult = Union[QRCode, Rejection]


def normalize_code(code) -> str:
    if not isinstance(code, str) or not code.strip():
        raise ValidationError("A QR code value is required")
    return code.strip().upper()


class QRCodeRegistry:
    """Registry of the QR codes posted around the gym. Codes are matched case-insensitively."""

    def __init__(self, database: Database, clock: Optional[Clock] = None):
        self.database = database
        self.clock = clock or SystemClock()

    async def _fetch(self, code: str) -> Optional[QRCode]:
        record = await self.database.fetch_one(qr_codes.select().where(qr_codes.c.code == code))
        return QRCode.from_record(record) if record else None

    @storage_guard
    async def create(self, code: str, name: str) -> QRCodeResult:
        code = normalize_code(code)
        if not name:
            raise ValidationError("A QR code name is required")
        if await self._fetch(code) is not None:
            return Rejection(RejectionReason.ALREADY_EXISTS, "QR code already exists")

        now = self.clock.now()
        try:
            qr_id = await self.database.execute(
                qr_codes.insert().values(
                    code=code,
                    name=name,
                    active=True,
                    created_at=to_storage(now),
                    updated_at=to_storage(now),
                )
            )
        except (IntegrityError, sqlite3.IntegrityError):
            return Rejection(RejectionReason.ALREADY_EXISTS, "QR code already exists")

        logger.info("QR code %s registered for %s", code, name)
        return QRCode(id=qr_id, code=code, name=name, active=True, created_at=now, updated_at=now)

    @storage_guard
    async def deactivate(self, code: str) -> QRCodeResult:
        code = normalize_code(code)
        if await self._fetch(code) is None:
            return Rejection(RejectionReason.NOT_FOUND, "QR code not found")
        await self.database.execute(
            qr_codes.update().where(qr_codes.c.code == code).values(
                active=False, updated_at=to_storage(self.clock.now())
            )
        )
        logger.info("QR code %s deactivated", code)
        return await self._fetch(code)

    @storage_guard
    async def get(self, code: str) -> Optional[QRCode]:
        return await self._fetch(normalize_code(code))

    @storage_guard
    async def all(self, active: Optional[bool] = None) -> List[QRCode]:
        query = qr_codes.select().order_by(qr_codes.c.created_at.desc(), qr_codes.c.id.desc())
        if active is not None:
            query = query.where(qr_codes.c.active == active)
        records = await self.database.fetch_all(query)
        return [QRCode.from_record(record) for record in records]
