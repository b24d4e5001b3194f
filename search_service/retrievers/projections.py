"""Record-to-candidate projections, one per entity kind.

Records are plain mappings with snake_case keys, as produced by asyncpg rows
or JSON fixtures. Missing engagement counts are treated as zero.

Quality flags per kind
- assets: verified = owning creator verified; active = not archived or
  rejected; approved = status APPROVED or PUBLISHED
- creators: verified and approved = verification status ``approved``;
  active = availability ``available`` or ``limited``
- projects: verified = brand verified; active = status ACTIVE;
  approved = status ACTIVE or COMPLETED
- licenses: verified = brand verified; active = status ACTIVE;
  approved = signed
"""

from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

from ..models import Candidate, EntityKind, PopularityVector, QualityFlags


def parse_datetime(value: Any) -> Optional[datetime]:
    """Accept ``datetime`` values or ISO-8601 strings (``Z`` suffix allowed)."""
    if value is None or isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def _count(record: Mapping[str, Any], key: str) -> int:
    value = record.get(key)
    return max(int(value), 0) if value else 0


def _popularity(record: Mapping[str, Any]) -> PopularityVector:
    return PopularityVector(
        views=_count(record, "view_count"),
        usage=_count(record, "usage_count"),
        favorites=_count(record, "favorite_count"),
    )


def _status(record: Mapping[str, Any]) -> str:
    return str(record.get("status") or "").upper()


def project_asset(record: Mapping[str, Any]) -> Candidate:
    status = _status(record)
    return Candidate(
        entity_kind=EntityKind.ASSETS,
        entity_id=str(record["id"]),
        primary_text=record.get("title") or "",
        secondary_text=record.get("description"),
        created_at=parse_datetime(record.get("created_at")),
        updated_at=parse_datetime(record.get("updated_at")),
        popularity=_popularity(record),
        quality=QualityFlags(
            verified=bool(record.get("creator_verified")),
            active=status not in ("ARCHIVED", "REJECTED"),
            approved=status in ("APPROVED", "PUBLISHED"),
        ),
        metadata={
            "type": "asset",
            "assetType": record.get("type"),
            "status": record.get("status"),
            "fileSize": record.get("file_size"),
            "mimeType": record.get("mime_type"),
            "thumbnailUrl": record.get("thumbnail_url"),
            "createdBy": record.get("created_by"),
            "tags": list(record.get("tags") or []),
        },
    )


def project_creator(record: Mapping[str, Any]) -> Candidate:
    verification = str(record.get("verification_status") or "").lower()
    availability = str(record.get("availability_status") or "").lower()
    return Candidate(
        entity_kind=EntityKind.CREATORS,
        entity_id=str(record["id"]),
        primary_text=record.get("stage_name") or "",
        secondary_text=record.get("bio"),
        created_at=parse_datetime(record.get("created_at")),
        updated_at=parse_datetime(record.get("updated_at")),
        popularity=_popularity(record),
        quality=QualityFlags(
            verified=verification == "approved",
            active=availability in ("available", "limited"),
            approved=verification == "approved",
        ),
        metadata={
            "type": "creator",
            "stageName": record.get("stage_name"),
            "verificationStatus": record.get("verification_status"),
            "specialties": list(record.get("specialties") or []),
            "country": record.get("country"),
            "availability": record.get("availability_status"),
            "portfolioUrl": record.get("portfolio_url"),
        },
    )


def project_project(record: Mapping[str, Any]) -> Candidate:
    status = _status(record)
    return Candidate(
        entity_kind=EntityKind.PROJECTS,
        entity_id=str(record["id"]),
        primary_text=record.get("name") or "",
        secondary_text=record.get("description"),
        created_at=parse_datetime(record.get("created_at")),
        updated_at=parse_datetime(record.get("updated_at")),
        popularity=_popularity(record),
        quality=QualityFlags(
            verified=bool(record.get("brand_verified")),
            active=status == "ACTIVE",
            approved=status in ("ACTIVE", "COMPLETED"),
        ),
        metadata={
            "type": "project",
            "projectType": record.get("project_type"),
            "status": record.get("status"),
            "brandId": record.get("brand_id"),
            "brandName": record.get("brand_name"),
            "budgetCents": record.get("budget_cents"),
        },
    )


def license_title(record: Mapping[str, Any]) -> str:
    return f"{record.get('license_type') or ''} License - {record.get('asset_title') or ''}"


def license_description(record: Mapping[str, Any]) -> str:
    return f"License for {record.get('brand_name') or ''}"


def project_license(record: Mapping[str, Any]) -> Candidate:
    status = _status(record)
    return Candidate(
        entity_kind=EntityKind.LICENSES,
        entity_id=str(record["id"]),
        primary_text=license_title(record),
        secondary_text=license_description(record),
        created_at=parse_datetime(record.get("created_at")),
        updated_at=parse_datetime(record.get("updated_at")),
        popularity=_popularity(record),
        quality=QualityFlags(
            verified=bool(record.get("brand_verified")),
            active=status == "ACTIVE",
            approved=record.get("signed_at") is not None,
        ),
        metadata={
            "type": "license",
            "licenseType": record.get("license_type"),
            "status": record.get("status"),
            "assetId": record.get("asset_id"),
            "assetTitle": record.get("asset_title"),
            "brandId": record.get("brand_id"),
            "brandName": record.get("brand_name"),
            "feeCents": record.get("fee_cents"),
            "endDate": record["end_date"].isoformat()
            if isinstance(record.get("end_date"), datetime) else record.get("end_date"),
        },
    )


PROJECTIONS: Dict[EntityKind, Callable[[Mapping[str, Any]], Candidate]] = {
    EntityKind.ASSETS: project_asset,
    EntityKind.CREATORS: project_creator,
    EntityKind.PROJECTS: project_project,
    EntityKind.LICENSES: project_license,
}
