"""
Unit tests for JourneyAudioService
"""

from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from repositories.audio_repository import GeneratedAudioRepository, VoiceTemplateRepository
from services.journey_audio_service import JourneyAudioService, audio_cache_key
from services.journey_collaborators import AudioRenderer, CollaboratorError
from services.journey_exceptions import JourneyConfigurationError


@pytest.fixture
def contact():
    return SimpleNamespace(id=7, first_name='Sam', last_name='Lee', full_name='Sam Lee', phone='+15550001111',
                           email=None, lead_status='NEW', contact_metadata={})


@pytest.fixture
def template():
    return SimpleNamespace(id='vt-1', script='Hi {{firstName}}, this is Acme Roofing.',
                           voice_config={'voice': 'alloy'})


@pytest.fixture
def repos(template):
    voice_templates = Mock(spec=VoiceTemplateRepository)
    voice_templates.get_for_tenant.return_value = template
    generated = Mock(spec=GeneratedAudioRepository)
    generated.find_by_cache_key.return_value = None
    generated.create.side_effect = lambda **kwargs: SimpleNamespace(id='audio-9', **kwargs)
    return SimpleNamespace(voice_templates=voice_templates, generated=generated)


@pytest.fixture
def renderer():
    renderer = Mock(spec=AudioRenderer)
    renderer.render_audio.return_value = {'audio': b'ID3fake', 'durationSeconds': 4.2}
    return renderer


@pytest.fixture
def service(repos, renderer, tmp_path):
    return JourneyAudioService(repos.voice_templates, repos.generated, renderer, storage_dir=str(tmp_path))


class TestAudioCacheKey:

    def test_normalises_values(self):
        assert audio_cache_key('vt-1', {'firstName': '  SAM  '}) == audio_cache_key('vt-1', {'firstName': 'sam'})

    def test_template_and_values_change_key(self):
        base = audio_cache_key('vt-1', {'firstName': 'sam'})
        assert audio_cache_key('vt-2', {'firstName': 'sam'}) != base
        assert audio_cache_key('vt-1', {'firstName': 'alex'}) != base


class TestResolveAudio:

    def test_pre_generated_audio(self, service, repos, contact):
        repos.generated.get_for_tenant.return_value = SimpleNamespace(id='a-1', audio_path='/audio/a-1.mp3')

        audio = service.resolve_audio('tenant-1', {'journeyAudioId': 'a-1', 'audioFile': 'x.mp3'}, contact)

        assert audio == {'audioRef': '/audio/a-1.mp3', 'source': 'journey_audio', 'audioId': 'a-1'}

    def test_missing_pre_generated_audio(self, service, repos, contact):
        repos.generated.get_for_tenant.return_value = None
        with pytest.raises(CollaboratorError, match="Journey audio not found"):
            service.resolve_audio('tenant-1', {'journeyAudioId': 'a-1'}, contact)

    def test_static_file(self, service, contact):
        assert service.resolve_audio('tenant-1', {'audioFile': 'intro.mp3'}, contact) == {
            'audioRef': 'intro.mp3', 'source': 'audio_file'
        }

    def test_no_source_is_a_configuration_error(self, service, contact):
        with pytest.raises(JourneyConfigurationError):
            service.resolve_audio('tenant-1', {}, contact)

    def test_renders_and_stores_voice_template(self, service, repos, renderer, contact, tmp_path):
        audio = service.resolve_audio('tenant-1', {'voiceTemplateId': 'vt-1'}, contact)

        renderer.render_audio.assert_called_once_with('Hi Sam, this is Acme Roofing.', {'voice': 'alloy'})
        expected_key = audio_cache_key('vt-1', {'firstName': 'Sam'})
        assert audio['source'] == 'voice_template'
        assert audio['cached'] is False
        assert audio['audioRef'] == str(tmp_path / f"{expected_key}.mp3")
        assert (tmp_path / f"{expected_key}.mp3").read_bytes() == b'ID3fake'
        kwargs = repos.generated.create.call_args[1]
        assert kwargs['cache_key'] == expected_key
        assert kwargs['duration_seconds'] == 4.2

    def test_cached_rendering_is_reused(self, service, repos, renderer, contact):
        repos.generated.find_by_cache_key.return_value = SimpleNamespace(id='audio-1', audio_path='/a.mp3')

        audio = service.resolve_audio('tenant-1', {'voiceTemplateId': 'vt-1'}, contact)

        assert audio == {'audioRef': '/a.mp3', 'source': 'voice_template', 'audioId': 'audio-1', 'cached': True}
        renderer.render_audio.assert_not_called()

    def test_missing_template(self, service, repos, contact):
        repos.voice_templates.get_for_tenant.return_value = None
        with pytest.raises(CollaboratorError, match="Voice template not found"):
            service.resolve_audio('tenant-1', {'voiceTemplateId': 'vt-1'}, contact)

    def test_no_renderer_configured(self, repos, contact, tmp_path):
        service = JourneyAudioService(repos.voice_templates, repos.generated, None, storage_dir=str(tmp_path))
        with pytest.raises(CollaboratorError, match="No audio renderer"):
            service.resolve_audio('tenant-1', {'voiceTemplateId': 'vt-1'}, contact)
