"""
Audio repositories - voice templates and rendered audio (TTS cache)
"""

from typing import Optional
from repositories.base_repository import BaseRepository
from crm_database import VoiceTemplate, GeneratedAudio
import logging

logger = logging.getLogger(__name__)


class VoiceTemplateRepository(BaseRepository[VoiceTemplate]):
    """Repository for VoiceTemplate data access"""

    def __init__(self, session):
        super().__init__(session, VoiceTemplate)

    def get_for_tenant(self, template_id: str, tenant_id: str) -> Optional[VoiceTemplate]:
        return self.find_one_by(id=template_id, tenant_id=tenant_id)


class GeneratedAudioRepository(BaseRepository[GeneratedAudio]):
    """Repository for GeneratedAudio data access"""

    def __init__(self, session):
        super().__init__(session, GeneratedAudio)

    def find_by_cache_key(self, cache_key: str) -> Optional[GeneratedAudio]:
        return self.find_one_by(cache_key=cache_key)

    def get_for_tenant(self, audio_id: str, tenant_id: str) -> Optional[GeneratedAudio]:
        return self.find_one_by(id=audio_id, tenant_id=tenant_id)
