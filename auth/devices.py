"""
auth/devices.py -- Device Registry: per-(user, user agent, IP) session origins.

A Device row is how the core recognises a returning login and how it scopes
refresh-token revocation to a single session. The fingerprint is the
(user_agent, ip_address) pair -- a heuristic, not an identity claim.

Uniqueness: UNIQUE(user_id, user_agent, ip_address) in auth/db.py. When two
first logins from the same fingerprint race, one INSERT fails with
IntegrityError; register() catches it, re-reads the winner's row, and
reports created=False so only one new-device alert goes out.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import and_
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.db import devices, from_iso, to_iso
from auth.models import Device
from core.geo import GeoLocation


def _geo_values(geo: Optional[GeoLocation]) -> dict:
    if geo is None:
        return {}
    return {
        "geo_country": geo.country,
        "geo_region": geo.region,
        "geo_city": geo.city,
        "geo_latitude": geo.latitude,
        "geo_longitude": geo.longitude,
    }


class DeviceRegistry:
    """Repository for Device rows."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def find(self, user_id: int, user_agent: Optional[str], ip_address: Optional[str]) -> Optional[Device]:
        """Look up the device matching a fingerprint. Missing values match the "" sentinel."""
        with self.engine.connect() as conn:
            row = conn.execute(
                devices.select().where(
                    and_(
                        devices.c.user_id == user_id,
                        devices.c.user_agent == (user_agent or ""),
                        devices.c.ip_address == (ip_address or ""),
                    )
                )
            ).fetchone()
        return _row_to_device(row) if row is not None else None

    def get(self, user_id: int, device_id: int) -> Optional[Device]:
        """Fetch a device only if it belongs to user_id. Ownership is part of the lookup."""
        with self.engine.connect() as conn:
            row = conn.execute(
                devices.select().where(and_(devices.c.id == device_id, devices.c.user_id == user_id))
            ).fetchone()
        return _row_to_device(row) if row is not None else None

    def list_for_user(self, user_id: int) -> list[Device]:
        """All of a user's devices, most recently active first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                devices.select().where(devices.c.user_id == user_id).order_by(devices.c.last_active_at.desc())
            ).fetchall()
        return [_row_to_device(r) for r in rows]

    def register(
        self,
        user_id: int,
        user_agent: Optional[str],
        ip_address: Optional[str],
        geo: Optional[GeoLocation],
        now: datetime,
        device_type: str = "web",
    ) -> tuple[Device, bool]:
        """Insert a device for a new fingerprint.

        Returns:
            Tuple of (device, created). created is False when a concurrent
            login inserted the same fingerprint first.
        """
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    devices.insert().values(
                        user_id=user_id,
                        device_type=device_type,
                        user_agent=user_agent or "",
                        ip_address=ip_address or "",
                        last_active_at=to_iso(now),
                        created_at=to_iso(now),
                        **_geo_values(geo),
                    )
                )
                device_id = result.inserted_primary_key[0]
        except IntegrityError:
            existing = self.find(user_id, user_agent, ip_address)
            if existing is None:
                raise
            return existing, False
        return (
            Device(
                id=device_id,
                user_id=user_id,
                device_type=device_type,
                user_agent=user_agent or "",
                ip_address=ip_address or "",
                geo=geo,
                last_active_at=now,
                created_at=now,
            ),
            True,
        )

    def touch(self, device_id: int, now: datetime, geo: Optional[GeoLocation] = None) -> None:
        """Refresh last_active_at, and the geo snapshot when a new one is available."""
        with self.engine.begin() as conn:
            conn.execute(
                devices.update().where(devices.c.id == device_id).values(last_active_at=to_iso(now), **_geo_values(geo))
            )

    def delete(self, user_id: int, device_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                devices.delete().where(and_(devices.c.id == device_id, devices.c.user_id == user_id))
            )
        return result.rowcount > 0

    def delete_others(self, user_id: int, keep_device_id: int) -> int:
        """Delete every device of user_id except keep_device_id. Returns count deleted."""
        with self.engine.begin() as conn:
            result = conn.execute(
                devices.delete().where(and_(devices.c.user_id == user_id, devices.c.id != keep_device_id))
            )
        return result.rowcount


def _row_to_device(row) -> Device:
    geo = None
    if any(
        v is not None for v in (row.geo_country, row.geo_region, row.geo_city, row.geo_latitude, row.geo_longitude)
    ):
        geo = GeoLocation(
            country=row.geo_country,
            region=row.geo_region,
            city=row.geo_city,
            latitude=row.geo_latitude,
            longitude=row.geo_longitude,
        )
    return Device(
        id=row.id,
        user_id=row.user_id,
        device_type=row.device_type,
        user_agent=row.user_agent,
        ip_address=row.ip_address,
        geo=geo,
        last_active_at=from_iso(row.last_active_at),  # type: ignore[arg-type]
        created_at=from_iso(row.created_at),
    )
