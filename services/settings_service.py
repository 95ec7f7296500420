"""
App Settings Service

Reads the singleton AppSettings document. Redis caches it for a short TTL
because every new conversation consults it; cache failures fall back to the
database.
"""

import orjson
import structlog
import redis.asyncio as redis
from typing import Optional

from pydantic import ValidationError as SchemaError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from errors import StorageError
from models import APP_SETTINGS_ID, AppSettingsRecord, utcnow
from schemas import AppSettings

logger = structlog.get_logger("settings_service")

CACHE_KEY = "inbox:app_settings"


class SettingsService:
    def __init__(self, db: AsyncSession, redis_client: Optional[redis.Redis] = None, ttl: int = None):
        self.db = db
        self.redis = redis_client
        self.ttl = ttl if ttl is not None else get_settings().SETTINGS_CACHE_TTL

    async def get(self) -> AppSettings:
        cached = await self._load_cache()
        if cached is not None:
            return cached

        try:
            record = await self.db.get(AppSettingsRecord, APP_SETTINGS_ID)
        except SQLAlchemyError as e:
            raise StorageError(f"Settings lookup failed: {e}") from e

        if record is None or not record.content:
            settings = AppSettings()
        else:
            try:
                settings = AppSettings.model_validate(record.content)
            except SchemaError as e:
                # Treat a corrupt document as "automation off" rather than failing ingestion
                logger.error("Stored app settings are invalid", error=str(e))
                settings = AppSettings()

        await self._save_cache(settings)
        return settings

    async def save(self, settings: AppSettings) -> AppSettings:
        content = settings.model_dump(by_alias=True)
        try:
            record = await self.db.get(AppSettingsRecord, APP_SETTINGS_ID)
            if record is None:
                self.db.add(AppSettingsRecord(id=APP_SETTINGS_ID, content=content))
            else:
                record.content = content
                record.updated_at = utcnow()
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageError(f"Settings save failed: {e}") from e

        await self._invalidate()
        return settings

    async def _load_cache(self) -> Optional[AppSettings]:
        if self.redis is None:
            return None
        try:
            data = await self.redis.get(CACHE_KEY)
            if data:
                return AppSettings.model_validate(orjson.loads(data))
        except Exception as e:
            logger.warning("Settings cache GET failed", error=str(e))
        return None

    async def _save_cache(self, settings: AppSettings):
        if self.redis is None or self.ttl <= 0:
            return
        try:
            await self.redis.setex(
                CACHE_KEY, self.ttl, orjson.dumps(settings.model_dump(by_alias=True))
            )
        except Exception as e:
            logger.warning("Settings cache SET failed", error=str(e))

    async def _invalidate(self):
        if self.redis is None:
            return
        try:
            await self.redis.delete(CACHE_KEY)
        except Exception as e:
            logger.warning("Settings cache DELETE failed", error=str(e))
