"""Reconcile vendor-identified vehicles and drivers with tenant-owned records.

Auto-matching only ever fills mappings whose ``internal_id`` is empty, so a
confirmed match (manual or automatic) is never replaced by a later guess.
Ties, and internal records claimed equally by two vendor entities, stay
unmatched for a human to resolve.
"""

from __future__ import annotations

import logging
import math
import re
import uuid
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Iterable, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import MappingConflict
from ..models.eld import EldConnection, EntityMapping
from ..models.enums import EntityType, MatchSource
from ..models.tenant import Driver, Vehicle
from ..providers import ExternalDriver, ExternalVehicle
from ..timeutil import utcnow

logger = logging.getLogger(__name__)

MANUAL_CONFIDENCE = 1.0
NAME_THRESHOLD = 0.85

# Auto-match confidence by the signal that decided it; all below manual.
METHOD_CONFIDENCE = {
    "vin": 0.95,
    "license_number": 0.95,
    "license_plate": 0.9,
    "email": 0.9,
    "name": 0.7,
}

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_name(value: str | None) -> str:
    return " ".join(_NON_ALNUM.sub(" ", (value or "").lower()).split())


def normalize_identifier(value: str | None) -> str:
    return _NON_ALNUM.sub("", (value or "").lower())


def name_similarity(a: str | None, b: str | None) -> float:
    left, right = normalize_name(a), normalize_name(b)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    return SequenceMatcher(None, left, right).ratio()


def _same(a: str | None, b: str | None) -> bool:
    left, right = normalize_identifier(a), normalize_identifier(b)
    return bool(left) and left == right


def score_vehicle(mapping: EntityMapping, vehicle: Vehicle) -> tuple[float, str | None]:
    """Higher is better; exact identifiers outrank any name similarity."""
    name_score = name_similarity(mapping.external_name, vehicle.name)
    if _same(mapping.external_vin, vehicle.vin):
        return 3.0 + name_score, "vin"
    if _same(mapping.external_identifier, vehicle.license_plate):
        return 2.0 + name_score, "license_plate"
    if name_score >= NAME_THRESHOLD:
        return name_score, "name"
    return 0.0, None


def score_driver(mapping: EntityMapping, driver: Driver) -> tuple[float, str | None]:
    name_score = name_similarity(mapping.external_name, driver.full_name)
    if _same(mapping.external_identifier, driver.license_number):
        return 3.0 + name_score, "license_number"
    if mapping.external_email and driver.email and (
        mapping.external_email.strip().lower() == driver.email.strip().lower()
    ):
        return 2.0 + name_score, "email"
    if name_score >= NAME_THRESHOLD:
        return name_score, "name"
    return 0.0, None


@dataclass
class MatchReport:
    matched: list[EntityMapping] = field(default_factory=list)
    ambiguous: list[EntityMapping] = field(default_factory=list)
    unmatched: list[EntityMapping] = field(default_factory=list)

    def to_dict(self) -> dict[str, int]:
        return {
            "matched": len(self.matched),
            "ambiguous": len(self.ambiguous),
            "unmatched": len(self.unmatched),
        }


@dataclass
class _Proposal:
    score: float
    method: str
    mapping: EntityMapping
    internal_id: uuid.UUID


class EntityReconciler:
    def __init__(self, db: AsyncSession):
        self.db = db

    # -- Mapping rows ----------------------------------------------------

    async def _existing(
        self, connection_id: uuid.UUID, entity_type: EntityType, external_ids: Iterable[str]
    ) -> dict[str, EntityMapping]:
        ids = list(set(external_ids))
        if not ids:
            return {}
        stmt = select(EntityMapping).where(
            EntityMapping.connection_id == connection_id,
            EntityMapping.entity_type == entity_type.value,
            EntityMapping.external_id.in_(ids),
        )
        return {m.external_id: m for m in (await self.db.execute(stmt)).scalars().all()}

    async def upsert_external_vehicles(
        self, connection: EldConnection, vehicles: Sequence[ExternalVehicle]
    ) -> tuple[int, int]:
        existing = await self._existing(connection.id, EntityType.VEHICLE, (v.external_id for v in vehicles))
        created = updated = 0
        now = utcnow()
        for vehicle in vehicles:
            mapping = existing.get(vehicle.external_id)
            if mapping is None:
                mapping = EntityMapping(
                    tenant_id=connection.tenant_id,
                    connection_id=connection.id,
                    entity_type=EntityType.VEHICLE.value,
                    external_id=vehicle.external_id,
                )
                self.db.add(mapping)
                existing[vehicle.external_id] = mapping
                created += 1
            else:
                updated += 1
            mapping.external_name = vehicle.name
            mapping.external_identifier = vehicle.license_plate
            mapping.external_vin = vehicle.vin
            mapping.external_data = {
                "make": vehicle.make,
                "model": vehicle.model,
                "year": vehicle.year,
            }
            mapping.last_seen_at = now
        await self.db.flush()
        return created, updated

    async def upsert_external_drivers(
        self, connection: EldConnection, drivers: Sequence[ExternalDriver]
    ) -> tuple[int, int]:
        existing = await self._existing(connection.id, EntityType.DRIVER, (d.external_id for d in drivers))
        created = updated = 0
        now = utcnow()
        for driver in drivers:
            mapping = existing.get(driver.external_id)
            if mapping is None:
                mapping = EntityMapping(
                    tenant_id=connection.tenant_id,
                    connection_id=connection.id,
                    entity_type=EntityType.DRIVER.value,
                    external_id=driver.external_id,
                )
                self.db.add(mapping)
                existing[driver.external_id] = mapping
                created += 1
            else:
                updated += 1
            mapping.external_name = driver.name or None
            mapping.external_identifier = driver.license_number
            mapping.external_email = driver.email
            mapping.external_data = {"phone": driver.phone, "license_state": driver.license_state}
            mapping.last_seen_at = now
        await self.db.flush()
        return created, updated

    async def ensure_mappings(
        self, connection: EldConnection, entity_type: EntityType, external_ids: Iterable[str]
    ) -> dict[str, uuid.UUID | None]:
        """External id -> internal id, creating unmatched rows for ids seen for the first time."""
        wanted = {external_id for external_id in external_ids if external_id}
        existing = await self._existing(connection.id, entity_type, wanted)
        for external_id in wanted - existing.keys():
            mapping = EntityMapping(
                tenant_id=connection.tenant_id,
                connection_id=connection.id,
                entity_type=entity_type.value,
                external_id=external_id,
                last_seen_at=utcnow(),
            )
            self.db.add(mapping)
            existing[external_id] = mapping
        await self.db.flush()
        return {external_id: mapping.internal_id for external_id, mapping in existing.items()}

    async def list_mappings(
        self,
        tenant_id: uuid.UUID,
        connection_id: uuid.UUID,
        entity_type: EntityType | None = None,
    ) -> list[EntityMapping]:
        stmt = select(EntityMapping).where(
            EntityMapping.tenant_id == tenant_id,
            EntityMapping.connection_id == connection_id,
        )
        if entity_type is not None:
            stmt = stmt.where(EntityMapping.entity_type == entity_type.value)
        stmt = stmt.order_by(EntityMapping.entity_type, EntityMapping.external_name)
        return list((await self.db.execute(stmt)).scalars().all())

    # -- Auto-match ------------------------------------------------------

    async def auto_match_vehicles(self, tenant_id: uuid.UUID, connection_id: uuid.UUID) -> MatchReport:
        return await self._auto_match(tenant_id, connection_id, EntityType.VEHICLE)

    async def auto_match_drivers(self, tenant_id: uuid.UUID, connection_id: uuid.UUID) -> MatchReport:
        return await self._auto_match(tenant_id, connection_id, EntityType.DRIVER)

    async def _auto_match(
        self, tenant_id: uuid.UUID, connection_id: uuid.UUID, entity_type: EntityType
    ) -> MatchReport:
        report = MatchReport()
        mappings = (
            await self.db.execute(
                select(EntityMapping).where(
                    EntityMapping.tenant_id == tenant_id,
                    EntityMapping.connection_id == connection_id,
                    EntityMapping.entity_type == entity_type.value,
                )
            )
        ).scalars().all()
        pending = [m for m in mappings if m.internal_id is None]
        if not pending:
            return report
        taken = {m.internal_id for m in mappings if m.internal_id is not None}

        if entity_type == EntityType.VEHICLE:
            model, scorer = Vehicle, score_vehicle
        else:
            model, scorer = Driver, score_driver
        candidates = [
            record
            for record in (await self.db.execute(select(model).where(model.tenant_id == tenant_id))).scalars()
            if record.id not in taken
        ]

        proposals: dict[uuid.UUID, list[_Proposal]] = {}
        for mapping in pending:
            scored = sorted(
                (
                    (score, method, record.id)
                    for record in candidates
                    for score, method in [scorer(mapping, record)]
                    if method is not None
                ),
                key=lambda item: item[0],
                reverse=True,
            )
            if not scored:
                report.unmatched.append(mapping)
                continue
            if len(scored) > 1 and math.isclose(scored[0][0], scored[1][0]):
                report.ambiguous.append(mapping)
                continue
            score, method, internal_id = scored[0]
            proposals.setdefault(internal_id, []).append(_Proposal(score, method, mapping, internal_id))

        now = utcnow()
        for internal_id, claims in proposals.items():
            claims.sort(key=lambda p: p.score, reverse=True)
            if len(claims) > 1 and math.isclose(claims[0].score, claims[1].score):
                report.ambiguous.extend(p.mapping for p in claims)
                continue
            winner = claims[0]
            winner.mapping.internal_id = internal_id
            winner.mapping.match_source = MatchSource.AUTO.value
            winner.mapping.match_method = winner.method
            winner.mapping.match_confidence = METHOD_CONFIDENCE[winner.method]
            winner.mapping.matched_at = now
            winner.mapping.orphaned_at = None
            report.matched.append(winner.mapping)
            report.ambiguous.extend(p.mapping for p in claims[1:])

        await self.db.flush()
        logger.info(
            "Auto-matched %s for connection %s: %s", entity_type.value, connection_id, report.to_dict()
        )
        return report

    # -- Manual edits ----------------------------------------------------

    async def get_mapping(self, tenant_id: uuid.UUID, mapping_id: uuid.UUID) -> EntityMapping:
        mapping = (
            await self.db.execute(
                select(EntityMapping).where(
                    EntityMapping.id == mapping_id, EntityMapping.tenant_id == tenant_id
                )
            )
        ).scalar_one_or_none()
        if mapping is None:
            raise MappingConflict("Mapping not found")
        return mapping

    async def map_entity(
        self, tenant_id: uuid.UUID, mapping_id: uuid.UUID, internal_id: uuid.UUID
    ) -> EntityMapping:
        """Confirm a match by hand; refuses to bind one internal record twice per connection."""
        mapping = await self.get_mapping(tenant_id, mapping_id)
        model = Vehicle if mapping.entity_type == EntityType.VEHICLE else Driver
        record = await self.db.get(model, internal_id)
        if record is None or record.tenant_id != tenant_id:
            raise MappingConflict(f"{mapping.entity_type.title()} not found")

        clash = (
            await self.db.execute(
                select(EntityMapping.id).where(
                    EntityMapping.connection_id == mapping.connection_id,
                    EntityMapping.entity_type == mapping.entity_type,
                    EntityMapping.internal_id == internal_id,
                    EntityMapping.id != mapping.id,
                )
            )
        ).scalar_one_or_none()
        if clash is not None:
            raise MappingConflict(f"{mapping.entity_type.title()} is already mapped on this connection")

        mapping.internal_id = internal_id
        mapping.match_source = MatchSource.MANUAL.value
        mapping.match_method = "manual"
        mapping.match_confidence = MANUAL_CONFIDENCE
        mapping.matched_at = utcnow()
        mapping.orphaned_at = None
        await self.db.commit()
        return mapping

    async def unmap_entity(self, tenant_id: uuid.UUID, mapping_id: uuid.UUID) -> EntityMapping:
        mapping = await self.get_mapping(tenant_id, mapping_id)
        mapping.internal_id = None
        mapping.match_source = None
        mapping.match_method = None
        mapping.match_confidence = None
        mapping.matched_at = None
        await self.db.commit()
        return mapping

    async def mark_internal_deleted(
        self, tenant_id: uuid.UUID, entity_type: EntityType, internal_id: uuid.UUID
    ) -> int:
        """Orphan mappings pointing at a deleted internal record instead of deleting them."""
        result = await self.db.execute(
            update(EntityMapping)
            .where(
                EntityMapping.tenant_id == tenant_id,
                EntityMapping.entity_type == entity_type.value,
                EntityMapping.internal_id == internal_id,
            )
            .values(
                internal_id=None,
                match_source=None,
                match_method=None,
                match_confidence=None,
                orphaned_at=utcnow(),
            )
        )
        await self.db.commit()
        return result.rowcount or 0


def serialize_mapping(mapping: EntityMapping) -> dict:
    return {
        "id": str(mapping.id),
        "connectionId": str(mapping.connection_id),
        "entityType": mapping.entity_type,
        "externalId": mapping.external_id,
        "externalName": mapping.external_name,
        "externalIdentifier": mapping.external_identifier,
        "internalId": str(mapping.internal_id) if mapping.internal_id else None,
        "matchSource": mapping.match_source,
        "matchMethod": mapping.match_method,
        "matchConfidence": mapping.match_confidence,
        "needsReview": mapping.match_source == MatchSource.AUTO,
        "orphaned": mapping.orphaned_at is not None,
    }
