"""
JourneyAudioService - resolves the audio played by MAKE_CALL nodes.

Precedence: pre-generated journey audio, then a voice template rendered on
demand (cached by template and variable values), then a static audio file.
"""

import hashlib
import json
import os
import re
from typing import Any, Dict, Optional

from logging_config import get_logger
from repositories.audio_repository import GeneratedAudioRepository, VoiceTemplateRepository
from services.journey_collaborators import AudioRenderer, CollaboratorError
from services.journey_exceptions import JourneyConfigurationError
from services.template_variables import PLACEHOLDER_PATTERN, contact_variables, substitute

logger = get_logger(__name__)


def audio_cache_key(template_id: str, variables: Dict[str, Any]) -> str:
    """
    Content address for rendered template audio.

    Values are normalised (trimmed, lower-cased, whitespace collapsed) so trivially
    different inputs share one rendering.
    """
    normalized = {
        key: re.sub(r'\s+', ' ', str(value).strip().lower())
        for key, value in sorted(variables.items())
    }
    payload = f"{template_id}:{json.dumps(normalized, sort_keys=True)}"
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


class JourneyAudioService:

    def __init__(self, voice_template_repository: VoiceTemplateRepository,
                 generated_audio_repository: GeneratedAudioRepository,
                 audio_renderer: Optional[AudioRenderer],
                 storage_dir: str = 'generated_audio'):
        self.voice_template_repository = voice_template_repository
        self.generated_audio_repository = generated_audio_repository
        self.audio_renderer = audio_renderer
        self.storage_dir = storage_dir

    def resolve_audio(self, tenant_id: str, config: Dict[str, Any], contact) -> Dict[str, Any]:
        """
        Audio reference for a MAKE_CALL node.

        Returns:
            ``{'audioRef': ..., 'source': 'journey_audio' | 'voice_template' | 'audio_file', ...}``

        Raises:
            JourneyConfigurationError: No audio source configured at all
            CollaboratorError: A referenced source is missing or rendering failed
        """
        if config.get('journeyAudioId'):
            audio = self.generated_audio_repository.get_for_tenant(config['journeyAudioId'], tenant_id)
            if audio is None:
                raise CollaboratorError(f"Journey audio not found: {config['journeyAudioId']}")
            return {'audioRef': audio.audio_path, 'source': 'journey_audio', 'audioId': audio.id}

        if config.get('voiceTemplateId'):
            return self._render_voice_template(tenant_id, config['voiceTemplateId'], contact)

        if config.get('audioFile'):
            return {'audioRef': config['audioFile'], 'source': 'audio_file'}

        raise JourneyConfigurationError("MAKE_CALL node has no audio source configured")

    def _render_voice_template(self, tenant_id: str, template_id: str, contact) -> Dict[str, Any]:
        template = self.voice_template_repository.get_for_tenant(template_id, tenant_id)
        if template is None:
            raise CollaboratorError(f"Voice template not found: {template_id}")

        variables = contact_variables(contact)
        used = {
            match.group(1): variables.get(match.group(1).split('.')[-1], '')
            for match in PLACEHOLDER_PATTERN.finditer(template.script)
        }
        cache_key = audio_cache_key(template.id, used)

        cached = self.generated_audio_repository.find_by_cache_key(cache_key)
        if cached is not None:
            logger.debug("Voice template audio cache hit", template_id=template.id, cache_key=cache_key)
            return {'audioRef': cached.audio_path, 'source': 'voice_template',
                    'audioId': cached.id, 'cached': True}

        if self.audio_renderer is None:
            raise CollaboratorError("No audio renderer configured")
        text = substitute(template.script, variables)
        rendered = self.audio_renderer.render_audio(text, template.voice_config)

        os.makedirs(self.storage_dir, exist_ok=True)
        path = os.path.join(self.storage_dir, f"{cache_key}.mp3")
        with open(path, 'wb') as audio_file:
            audio_file.write(rendered['audio'])

        audio = self.generated_audio_repository.create(
            tenant_id=tenant_id,
            cache_key=cache_key,
            voice_template_id=template.id,
            audio_path=path,
            duration_seconds=rendered.get('durationSeconds'),
        )
        logger.info("Rendered voice template audio", template_id=template.id, audio_id=audio.id)
        return {'audioRef': path, 'source': 'voice_template', 'audioId': audio.id, 'cached': False}
