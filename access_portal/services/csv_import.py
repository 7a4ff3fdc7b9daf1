"""CSV grant import: parsing, header normalisation and row resolution.

Rows are resolved against the catalog by name. Rows that fail a required
field or a lookup are reported as failed without reaching the grant ledger.
Valid rows go through the same per-row path as the JSON bulk import.
"""
import csv
import io
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from access_portal.config import settings
from access_portal.services import catalog, grants, users
from access_portal.services.errors import BadRequestError

logger = logging.getLogger(__name__)

TEMPLATE_COLUMNS = [
    "userEmail",
    "systemName",
    "instanceName",
    "tierName",
    "status",
    "grantedAt",
]
REQUIRED_COLUMNS = ["userEmail", "systemName", "instanceName", "tierName"]

# Normalised header (lowercase, no spaces, underscores or dashes) -> column
HEADER_ALIASES = {
    "useremail": "userEmail",
    "email": "userEmail",
    "systemname": "systemName",
    "system": "systemName",
    "instancename": "instanceName",
    "instance": "instanceName",
    "tiername": "tierName",
    "tier": "tierName",
    "accesstier": "tierName",
    "status": "status",
    "grantedat": "grantedAt",
    "granteddate": "grantedAt",
}

CSV_STATUSES = {"": "active", "active": "active", "to_remove": "to_remove", "removed": "removed"}

TEMPLATE_ROWS = [
    TEMPLATE_COLUMNS,
    [
        "elokusa.zondi@silvertreebrands.com",
        "Magento",
        "UCOOK Production",
        "Admin",
        "active",
        "2024-01-01",
    ],
    [
        "tarak.pema@silvertreebrands.com",
        "Acumatica",
        "Production",
        "Admin",
        "active",
        "2024-01-02",
    ],
]


@dataclass
class ParsedCsvGrant:
    """A data row with its resolved IDs, or the reasons it cannot be imported."""

    row: int
    user_email: str = ""
    system_name: str = ""
    instance_name: str = ""
    tier_name: str = ""
    status: str = "active"
    granted_at: datetime | None = None
    system_instance_id: str | None = None
    access_tier_id: str | None = None
    errors: list[str] = field(default_factory=list)


def normalize_header(header: str) -> str:
    key = re.sub(r"[\s_\-]", "", header.strip().lower())
    return HEADER_ALIASES.get(key, header.strip())


def check_upload(filename: str | None, content: bytes) -> None:
    """Reject uploads that are missing, not CSV or too large."""
    if not content:
        raise BadRequestError("CSV file is required")
    if filename and not filename.lower().endswith(".csv"):
        raise BadRequestError("File must be a CSV file")
    if len(content) > settings.csv.max_file_bytes:
        limit_mb = settings.csv.max_file_bytes // (1024 * 1024)
        raise BadRequestError(f"File size exceeds {limit_mb}MB limit")


def parse_csv(content: str) -> list[dict[str, str]]:
    """Parse CSV text into rows keyed by canonical column names.

    Raises:
        BadRequestError: If required columns are missing or there are too many rows
    """
    reader = csv.DictReader(io.StringIO(content.lstrip("\ufeff")))
    if reader.fieldnames is None:
        raise BadRequestError("CSV file is empty")

    headers = [normalize_header(h) for h in reader.fieldnames]
    missing = [col for col in REQUIRED_COLUMNS if col not in headers]
    if missing:
        raise BadRequestError(
            f"Missing required columns: {', '.join(missing)}. "
            f"Found columns: {', '.join(headers)}"
        )

    rows = []
    for raw in reader:
        values = [(v or "") for v in raw.values() if not isinstance(v, list)]
        if not any(v.strip() for v in values):
            continue
        rows.append(
            {
                normalize_header(k): (v or "").strip()
                for k, v in raw.items()
                if k is not None and not isinstance(v, list)
            }
        )

    if len(rows) > settings.csv.max_rows:
        raise BadRequestError(f"CSV file cannot exceed {settings.csv.max_rows} rows")
    return rows


def _parse_granted_at(value: str) -> datetime:
    """Parse an ISO date or datetime. Offsets are converted to naive UTC."""
    # fromisoformat only accepts a "Z" suffix from Python 3.11
    text = value[:-1] + "+00:00" if value.endswith(("Z", "z")) else value
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise BadRequestError(f"Invalid grantedAt date '{value}'") from None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


async def resolve_rows(
    db: AsyncSession, rows: list[dict[str, str]]
) -> tuple[list[ParsedCsvGrant], list[ParsedCsvGrant]]:
    """Resolve rows against the catalog.

    Row numbers count the header as row 1. A user missing from the identity
    store is not an error; it is created when the grant is.

    Returns:
        Tuple of (valid, invalid) rows
    """
    valid: list[ParsedCsvGrant] = []
    invalid: list[ParsedCsvGrant] = []

    for index, row in enumerate(rows):
        parsed = ParsedCsvGrant(
            row=index + 2,
            user_email=row.get("userEmail", ""),
            system_name=row.get("systemName", ""),
            instance_name=row.get("instanceName", ""),
            tier_name=row.get("tierName", ""),
        )
        errors = parsed.errors

        if not parsed.user_email:
            errors.append("User email is required")
        if not parsed.system_name:
            errors.append("System name is required")
        if not parsed.instance_name:
            errors.append("Instance name is required")
        if not parsed.tier_name:
            errors.append("Access tier name is required")

        raw_status = row.get("status", "").lower()
        if raw_status in CSV_STATUSES:
            parsed.status = CSV_STATUSES[raw_status]
        else:
            errors.append(f"Invalid status '{row.get('status')}'")

        if row.get("grantedAt"):
            try:
                parsed.granted_at = _parse_granted_at(row["grantedAt"])
            except BadRequestError as e:
                errors.append(e.message)

        if errors:
            invalid.append(parsed)
            continue

        system = await catalog.find_system_by_name(db, parsed.system_name)
        if not system:
            errors.append(f"System not found: {parsed.system_name}")
        else:
            instance = await catalog.find_instance_by_name(
                db, system.id, parsed.instance_name
            )
            if not instance:
                errors.append(
                    f"Instance '{parsed.instance_name}' not found for system "
                    f"'{parsed.system_name}'"
                )
            else:
                parsed.system_instance_id = instance.id

            tier = await catalog.find_tier_by_name(db, system.id, parsed.tier_name)
            if not tier:
                errors.append(
                    f"Access tier '{parsed.tier_name}' not found for system "
                    f"'{parsed.system_name}'"
                )
            else:
                parsed.access_tier_id = tier.id

        (invalid if errors else valid).append(parsed)

    return valid, invalid


async def import_csv(
    db: AsyncSession,
    content: str,
    granted_by_id: str | None = None,
) -> grants.BulkCreateResult:
    """Import grants from CSV text.

    Valid rows are created one at a time; invalid rows are appended as failed
    entries so the report always covers every data row.
    """
    rows = parse_csv(content)
    valid, invalid = await resolve_rows(db, rows)

    outcome = grants.BulkCreateResult()
    for parsed in valid:
        outcome.results.append(
            await grants.create_grant_row(
                db,
                parsed.row,
                grants.GrantInput(
                    system_instance_id=parsed.system_instance_id,
                    access_tier_id=parsed.access_tier_id,
                    user_email=users.normalize_email(parsed.user_email),
                    granted_by_id=granted_by_id,
                    granted_at=parsed.granted_at,
                    status=parsed.status,
                ),
            )
        )
    for parsed in invalid:
        outcome.results.append(
            grants.BulkRowResult(
                row=parsed.row, success=False, error="; ".join(parsed.errors)
            )
        )

    logger.info(
        f"CSV import: {len(rows)} rows, {outcome.success} created, "
        f"{outcome.skipped} skipped, {outcome.failed} failed"
    )
    return outcome


def generate_template() -> str:
    """CSV template with the canonical header and two example rows."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerows(TEMPLATE_ROWS)
    return buffer.getvalue()
