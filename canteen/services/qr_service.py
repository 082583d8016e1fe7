"""
QR Code Service - composes, stores and records printable QR cards

Ordering guarantee: image bytes are written before the qr_artifact row is
inserted, and the row is deleted before the bytes. A failed insert removes
the bytes it just wrote.
"""
import base64
import binascii
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import quote

from starlette.concurrency import run_in_threadpool

from canteen.core.errors import (
    ArtifactPersistError,
    NotFoundError,
    StorageError,
)
from canteen.models import QRArtifact, Theater
from .image_composer import Captions, ImageComposer, ImageSpec
from .storage_service import LocalStorage

logger = logging.getLogger(__name__)

SAFE_SEGMENT = re.compile(r"[^A-Za-z0-9\-_]")


@dataclass
class ScreenBatchResult:
    batch_id: str
    artifacts: List[QRArtifact] = field(default_factory=list)
    failed: List[dict] = field(default_factory=list)


def sanitise_segment(value: str) -> str:
    return SAFE_SEGMENT.sub("_", value)


def build_payload_url(
    frontend_base: str,
    theater_id,
    qr_name: str,
    kind: str,
    seat: Optional[str] = None,
) -> str:
    """Menu URL encoded in the QR, e.g. /menu/{id}?qrName=Screen%20-%201&seat=A1&type=screen"""
    url = f"{frontend_base.rstrip('/')}/menu/{theater_id}?qrName={quote(qr_name, safe='')}"
    if seat:
        url += f"&seat={quote(seat, safe='')}"
    return url + f"&type={kind}"


def footer_caption(qr_name: str, seat_class: str, seat: Optional[str] = None) -> str:
    if seat:
        return f"{qr_name} | {seat}"
    if seat_class and seat_class != qr_name:
        return f"{qr_name} | {seat_class}"
    return qr_name


def decode_data_url(url: str) -> bytes:
    """data:[mime];base64,<payload> -> bytes"""
    header, _, payload = url.partition(",")
    try:
        if header.endswith(";base64"):
            return base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise StorageError(f"Invalid data URL: {e}") from e
    return payload.encode("utf-8")


class QRCodeService:
    """Generates single and per-seat screen QR artifacts"""

    def __init__(
        self,
        db,
        storage: LocalStorage,
        fallback_storage: Optional[LocalStorage],
        composer: ImageComposer,
        settings_service,
        frontend_base: str,
    ):
        self.db = db
        self.storage = storage
        self.fallback_storage = fallback_storage
        self.composer = composer
        self.settings_service = settings_service
        self.frontend_base = frontend_base

    # ========== Lookups ==========

    async def _load_theater(self, theater_id) -> dict:
        theater_uuid = uuid.UUID(str(theater_id))

        def query(session):
            theater = session.get(Theater, theater_uuid)
            if theater is None or theater.is_deleted:
                return None
            return {"id": theater.id, "name": theater.name, "logo_url": theater.logo_url}

        theater = await self.db.execute("qr.load_theater", query)
        if theater is None:
            raise NotFoundError(f"Theater {theater_id} not found", code="THEATER_NOT_FOUND")
        return theater

    async def _fetch_image(self, ref: Optional[str], label: str) -> Optional[bytes]:
        """Resolve a data:/http(s)/gs:///uploads reference to bytes; None on failure"""
        if not ref:
            return None
        try:
            if ref.startswith("data:"):
                return decode_data_url(ref)
            store = self._store_for(ref)
            blob = await store.get(ref)
            return blob.data
        except StorageError as e:
            logger.warning(f"Could not load {label} {ref[:80]}: {e}")
            return None

    async def _resolve_logo(self, logo_ref: Optional[str], theater: dict, branding) -> tuple:
        """explicit ref > theater logo > system default logo > none"""
        for ref in (logo_ref, theater.get("logo_url"), branding.logo_url):
            if not ref:
                continue
            data = await self._fetch_image(ref, "logo")
            if data is not None:
                return ref, data
        return None, None

    # ========== Storage ==========

    def _store_for(self, url: str) -> LocalStorage:
        if self.fallback_storage is not None and url.startswith("/uploads/"):
            return self.fallback_storage
        return self.storage

    async def _persist(self, png: bytes, logical_path: str) -> str:
        try:
            return await self.storage.put(png, logical_path, "image/png")
        except StorageError as e:
            if self.fallback_storage is None:
                raise ArtifactPersistError(f"Storage failed for {logical_path}: {e}") from e
            logger.warning(f"Primary storage failed for {logical_path}, using local fallback: {e}")

        try:
            return await self.fallback_storage.put(png, logical_path, "image/png")
        except StorageError as e:
            logger.error(f"Local fallback storage failed for {logical_path}: {e}")
            raise ArtifactPersistError(f"Could not store {logical_path}: {e}") from e

    async def _discard(self, url: str):
        try:
            await self._store_for(url).delete(url)
        except (StorageError, OSError) as e:
            logger.error(f"Failed to remove orphaned QR image {url}: {e}")

    # ========== Generation ==========

    async def _generate(
        self,
        theater: dict,
        kind: str,
        qr_name: str,
        seat_class: str,
        seat: Optional[str],
        logo: tuple,
        orientation: str,
        batch_id: Optional[str],
        created_by: Optional[str],
        banner: Optional[bytes],
    ) -> QRArtifact:
        payload = build_payload_url(self.frontend_base, theater["id"], qr_name, kind, seat)
        logo_ref, logo_bytes = logo

        spec = ImageSpec(
            payload=payload,
            canvas_kind=orientation,
            logo=logo_bytes,
            banner_image=banner,
            captions=Captions(footer=footer_caption(qr_name, seat_class, seat)),
            theater_name=theater["name"],
        )
        composed = await run_in_threadpool(self.composer.compose, spec)
        for warning in composed.warnings:
            logger.warning(f"[{qr_name}{'/' + seat if seat else ''}] {warning}")

        folder = f"qr-codes/{kind}/{sanitise_segment(theater['name'])}"
        if kind == "screen":
            folder += f"/{sanitise_segment(qr_name)}"
        filename = f"{qr_name}_{seat_class}" + (f"_{seat}" if seat else "") + ".png"
        filename = filename.replace("/", "_")

        image_location = await self._persist(composed.png, f"{folder}/{filename}")

        artifact = QRArtifact(
            id=uuid.uuid4(),
            theater_id=theater["id"],
            kind=kind,
            qr_name=qr_name,
            seat_class=seat_class,
            seat=seat,
            orientation=orientation,
            data_payload=payload,
            image_location=image_location,
            logo_location=logo_ref if logo_ref and not logo_ref.startswith("data:") else None,
            batch_id=batch_id,
            created_by=created_by,
        )

        def insert(session):
            session.add(artifact)
            session.flush()
            session.refresh(artifact)
            return artifact

        try:
            return await self.db.execute("qr.insert_artifact", insert, max_retries=1)
        except Exception:
            logger.error(f"Failed to record QR artifact {qr_name}; removing {image_location}")
            await self._discard(image_location)
            raise

    async def generate_single(
        self,
        theater_id,
        qr_name: str,
        seat_class: str,
        logo_ref: Optional[str] = None,
        orientation: str = "landscape",
        created_by: Optional[str] = None,
    ) -> QRArtifact:
        theater = await self._load_theater(theater_id)
        branding = await self.settings_service.get_branding()
        logo = await self._resolve_logo(logo_ref, theater, branding)
        banner = await self._fetch_image(branding.qr_background_url, "QR background")

        artifact = await self._generate(
            theater, "single", qr_name, seat_class, None,
            logo, orientation, None, created_by, banner,
        )
        logger.info(f"Generated single QR {qr_name} for theater {theater['name']}")
        return artifact

    async def generate_screen(
        self,
        theater_id,
        qr_name: str,
        seat_class: str,
        seats: List[str],
        logo_ref: Optional[str] = None,
        orientation: str = "landscape",
        created_by: Optional[str] = None,
    ) -> ScreenBatchResult:
        """One artifact per seat; failures are collected, not raised"""
        theater = await self._load_theater(theater_id)
        branding = await self.settings_service.get_branding()
        logo = await self._resolve_logo(logo_ref, theater, branding)
        banner = await self._fetch_image(branding.qr_background_url, "QR background")

        result = ScreenBatchResult(batch_id=uuid.uuid4().hex)
        for seat in seats:
            if not seat or not seat.strip():
                result.failed.append({"seat": seat, "error": "Seat is required for screen QR codes"})
                continue
            try:
                artifact = await self._generate(
                    theater, "screen", qr_name, seat_class, seat,
                    logo, orientation, result.batch_id, created_by, banner,
                )
            except Exception as e:
                logger.error(f"QR generation failed for {qr_name} seat {seat}: {e}")
                result.failed.append({"seat": seat, "error": str(e)})
                continue
            result.artifacts.append(artifact)

        logger.info(
            f"Screen QR batch {result.batch_id} for {qr_name}: "
            f"{len(result.artifacts)} generated, {len(result.failed)} failed"
        )
        return result

    # ========== Deletion ==========

    async def delete_artifact(self, artifact_id) -> bool:
        """Row first, then bytes; a failed byte delete is only logged"""
        artifact_uuid = uuid.UUID(str(artifact_id))

        def remove(session):
            artifact = session.get(QRArtifact, artifact_uuid)
            if artifact is None:
                return None
            location = artifact.image_location
            session.delete(artifact)
            return location

        location = await self.db.execute("qr.delete_artifact", remove)
        if location is None:
            return False

        if not await self._store_for(location).delete(location):
            logger.warning(f"QR artifact {artifact_id} removed but image {location} was left behind")
        return True
