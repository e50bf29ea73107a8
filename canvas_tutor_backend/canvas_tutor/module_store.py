"""
Vercel KV integration for module records, with an in-memory fallback.
Also handles .zipo archive export/import of finished modules.
"""
import io
import os
import re
import json
import uuid
import httpx
import logging
import zipfile
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from .models import ModuleEvent, ModuleRecord, ModuleStatus, dump_script, narration_texts
from .progress import ProgressChannel

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"


class ModuleStore:
    def __init__(self):
        self.kv_rest_api_url = os.getenv("KV_REST_API_URL")
        self.kv_rest_api_token = os.getenv("KV_REST_API_TOKEN")
        self._memory: Dict[str, str] = {}

        if not self.kv_rest_api_url or not self.kv_rest_api_token:
            logger.warning("KV storage not configured - falling back to in-memory storage")
            self.enabled = False
        else:
            self.enabled = True
            logger.info("KV storage enabled")

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.kv_rest_api_token}",
            "Content-Type": "application/json"
        }

    async def set_module(self, record: ModuleRecord) -> bool:
        """Store a module record"""
        record.updated_at = datetime.now(timezone.utc)
        key = f"module:{record.module_id}"
        value = record.model_dump_json()
        if not self.enabled:
            self._memory[key] = value
            return True

        try:
            async with httpx.AsyncClient(timeout=10) as client:
                response = await client.post(
                    f"{self.kv_rest_api_url}/set",
                    headers=self._headers(),
                    json=[key, value]
                )
                response.raise_for_status()
                logger.info(f"Stored module {record.module_id} in KV")
                return True
        except httpx.HTTPError as e:
            logger.error(f"Failed to store module {record.module_id} in KV: {e}")
            return False

    async def get_module(self, module_id: str) -> Optional[ModuleRecord]:
        """Retrieve a module record"""
        key = f"module:{module_id}"
        if not self.enabled:
            value = self._memory.get(key)
            return ModuleRecord.model_validate_json(value) if value else None

        try:
            async with httpx.AsyncClient(timeout=10) as client:
                response = await client.post(
                    f"{self.kv_rest_api_url}/get",
                    headers=self._headers(),
                    json=[key]
                )
                response.raise_for_status()
                data = response.json()

                if data.get("result"):
                    logger.info(f"Retrieved module {module_id} from KV")
                    return ModuleRecord.model_validate_json(data["result"])
                logger.info(f"Module {module_id} not found in KV")
                return None
        except httpx.HTTPError as e:
            logger.error(f"Failed to retrieve module {module_id} from KV: {e}")
            return None

    async def update_module(self, module_id: str, **fields: Any) -> bool:
        """Update fields of an existing module record"""
        record = await self.get_module(module_id)
        if not record:
            logger.error(f"Cannot update module {module_id} - not found")
            return False
        return await self.set_module(record.model_copy(update=fields))


async def record_progress(channel: ProgressChannel, store: ModuleStore) -> Optional[ModuleEvent]:
    """Drain a module's progress channel into its stored record; returns the terminal event."""
    terminal = None
    async for event in channel:
        if event.status == ModuleStatus.COMPLETED:
            # Only a finished run writes the script
            await store.update_module(
                event.module_id,
                status=event.status,
                message=event.message,
                script=dump_script(event.script or []),
                transcript=narration_texts(event.script or []),
            )
        else:
            await store.update_module(event.module_id, status=event.status, message=event.message)
        if event.is_terminal:
            terminal = event
    return terminal


def archive_filename(title: str) -> str:
    sanitized = re.sub(r"[^a-z0-9]", "", re.sub(r"\s+", "", title), flags=re.IGNORECASE)
    return f"{sanitized or 'module'}.zipo"


def export_archive(record: ModuleRecord) -> bytes:
    if record.status != ModuleStatus.COMPLETED:
        raise ValueError(f"Module {record.module_id} is not completed")
    manifest = record.model_dump(
        mode="json",
        include={"title", "prompt", "step_count", "language", "script", "transcript", "created_at", "updated_at"},
    )
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(MANIFEST_NAME, json.dumps(manifest, indent=2))
    return buffer.getvalue()


def import_archive(data: bytes) -> ModuleRecord:
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            if MANIFEST_NAME not in zf.namelist():
                raise ValueError(f"Invalid .zipo file: {MANIFEST_NAME} not found.")
            manifest = json.loads(zf.read(MANIFEST_NAME).decode("utf-8"))
    except zipfile.BadZipFile as e:
        raise ValueError("Invalid .zipo file: not a zip archive.") from e
    return ModuleRecord.model_validate({
        **manifest,
        "module_id": str(uuid.uuid4()),
        "status": ModuleStatus.COMPLETED,
    })
