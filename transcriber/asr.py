"""Transcription Pipeline - Speech recognition provider capability.

The pipeline depends on exactly one provider method, ``transcribe``. Providers
return a RecognitionResponse shaped like a cloud recognizer's raw output
(results -> alternatives -> words); post-processing lives in
transcriber.segments.

Provider selection is name dispatch in get_provider():
- "google-cloud-speech": Google Cloud Speech-to-Text (google-cloud-speech,
  imported lazily so the package is only needed where it is used)
- "static": deterministic canned response, for local runs and tests
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from transcriber.errors import TransientProviderError, ValidationError

logger = logging.getLogger(__name__)

PROVIDER_GOOGLE = "google-cloud-speech"
PROVIDER_STATIC = "static"

# Audio format -> Google Cloud Speech RecognitionConfig.AudioEncoding name
GOOGLE_ENCODINGS = {
    "mp3": "MP3",
    "wav": "LINEAR16",
    "m4a": "MP4",
    "opus": "OGG_OPUS",
    "ogg": "OGG_OPUS",
    "webm": "WEBM_OPUS",
}

SUPPORTED_LANGUAGES = (
    "pt-BR",
    "pt-PT",
    "en-US",
    "en-GB",
    "es-ES",
    "es-MX",
    "fr-FR",
    "de-DE",
    "it-IT",
    "ja-JP",
    "zh-CN",
    "zh-TW",
    "ko-KR",
    "ru-RU",
)

# Google recognizer model used for long-form audio
GOOGLE_MODEL = "latest_long"
GOOGLE_DIARIZATION_SPEAKER_COUNT = 2


# --- Recognition Types ---


@dataclass
class TranscriptionOptions:
    """Options passed to the provider for one recognition call."""

    language_code: str
    enable_punctuation: bool = True
    enable_word_time_offsets: bool = True
    enable_diarization: bool = False
    max_alternatives: int = 1


@dataclass
class WordInfo:
    """A recognized word.

    Times are kept as the provider returned them (number, {seconds, nanos},
    timedelta or "1.5s" string); transcriber.segments.parse_time normalizes them.
    """

    word: str
    start_time: Any = None
    end_time: Any = None
    speaker_tag: int | None = None


@dataclass
class RecognitionAlternative:
    transcript: str = ""
    confidence: float | None = None
    words: list[WordInfo] = field(default_factory=list)


@dataclass
class RecognitionResult:
    alternatives: list[RecognitionAlternative] = field(default_factory=list)


@dataclass
class RecognitionResponse:
    results: list[RecognitionResult] = field(default_factory=list)


class AsrProvider(Protocol):
    """Speech-to-text capability used by the worker."""

    name: str

    def transcribe(
        self,
        audio: bytes,
        audio_format: str,
        options: TranscriptionOptions,
    ) -> RecognitionResponse:
        """Recognize speech in audio.

        Raises:
            ValidationError: The audio format is not supported.
            TransientProviderError: The provider call failed.
        """
        ...


def resolve_encoding(audio_format: str) -> str:
    """Map an audio format to the recognizer encoding name.

    Raises:
        ValidationError: If the format is not supported.
    """
    encoding = GOOGLE_ENCODINGS.get(str(audio_format).lower())
    if encoding is None:
        raise ValidationError(f"Unsupported audio format: {audio_format}")
    return encoding


def response_from_dict(payload: dict[str, Any]) -> RecognitionResponse:
    """Build a RecognitionResponse from a recognizer JSON payload.

    Accepts both camelCase (REST) and snake_case keys.
    """
    results = []
    for raw_result in payload.get("results") or []:
        alternatives = []
        for raw_alt in raw_result.get("alternatives") or []:
            words = [
                WordInfo(
                    word=raw_word.get("word", ""),
                    start_time=raw_word.get("startTime", raw_word.get("start_time")),
                    end_time=raw_word.get("endTime", raw_word.get("end_time")),
                    speaker_tag=raw_word.get("speakerTag", raw_word.get("speaker_tag")),
                )
                for raw_word in raw_alt.get("words") or []
            ]
            alternatives.append(
                RecognitionAlternative(
                    transcript=raw_alt.get("transcript", ""),
                    confidence=raw_alt.get("confidence"),
                    words=words,
                )
            )
        results.append(RecognitionResult(alternatives=alternatives))
    return RecognitionResponse(results=results)


# --- Providers ---


class GoogleSpeechProvider:
    """Google Cloud Speech-to-Text provider.

    Credentials come from a JSON string (GOOGLE_CLOUD_CREDENTIALS) when given,
    otherwise from Application Default Credentials.
    """

    name = PROVIDER_GOOGLE

    def __init__(self, credentials_json: str | None = None, client: Any = None):
        self._credentials_json = credentials_json
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            from google.cloud import speech

            if self._credentials_json:
                from google.oauth2 import service_account

                credentials = service_account.Credentials.from_service_account_info(
                    json.loads(self._credentials_json)
                )
                self._client = speech.SpeechClient(credentials=credentials)
            else:
                self._client = speech.SpeechClient()
            logger.info("Google Cloud Speech-to-Text client initialized")
        return self._client

    def transcribe(
        self,
        audio: bytes,
        audio_format: str,
        options: TranscriptionOptions,
    ) -> RecognitionResponse:
        encoding = resolve_encoding(audio_format)

        from google.api_core import exceptions as google_exceptions
        from google.cloud import speech

        config = speech.RecognitionConfig(
            encoding=getattr(speech.RecognitionConfig.AudioEncoding, encoding),
            language_code=options.language_code,
            enable_automatic_punctuation=options.enable_punctuation,
            enable_word_time_offsets=options.enable_word_time_offsets,
            max_alternatives=options.max_alternatives,
            use_enhanced=True,
            model=GOOGLE_MODEL,
        )
        if options.enable_diarization:
            config.diarization_config = speech.SpeakerDiarizationConfig(
                enable_speaker_diarization=True,
                min_speaker_count=GOOGLE_DIARIZATION_SPEAKER_COUNT,
                max_speaker_count=GOOGLE_DIARIZATION_SPEAKER_COUNT,
            )

        logger.debug(
            "Calling Google Cloud Speech: format=%s, bytes=%d, language=%s",
            audio_format,
            len(audio),
            options.language_code,
        )
        try:
            response = self._get_client().recognize(
                config=config,
                audio=speech.RecognitionAudio(content=audio),
            )
        except google_exceptions.InvalidArgument as e:
            raise ValidationError(f"Recognizer rejected the audio: {e}") from e
        except google_exceptions.GoogleAPIError as e:
            raise TransientProviderError(str(e)) from e

        return RecognitionResponse(
            results=[
                RecognitionResult(
                    alternatives=[
                        RecognitionAlternative(
                            transcript=alt.transcript,
                            confidence=alt.confidence,
                            words=[
                                WordInfo(
                                    word=w.word,
                                    start_time=w.start_time,
                                    end_time=w.end_time,
                                    speaker_tag=w.speaker_tag or None,
                                )
                                for w in alt.words
                            ],
                        )
                        for alt in result.alternatives
                    ]
                )
                for result in response.results
            ]
        )


class StaticProvider:
    """Returns the same response for every call.

    Used for local runs without cloud credentials and as a deterministic
    provider in tests. The canned response is either passed in or loaded from
    a recognizer JSON file (camelCase REST or snake_case keys).
    """

    name = PROVIDER_STATIC

    def __init__(
        self,
        response: RecognitionResponse | None = None,
        response_path: str | Path | None = None,
    ):
        if response is None and response_path is not None:
            response = response_from_dict(json.loads(Path(response_path).read_text()))
            logger.info("Static provider loaded response from %s", response_path)
        self.response = response if response is not None else RecognitionResponse()
        self.calls: list[tuple[int, str, TranscriptionOptions]] = []

    def transcribe(
        self,
        audio: bytes,
        audio_format: str,
        options: TranscriptionOptions,
    ) -> RecognitionResponse:
        resolve_encoding(audio_format)
        self.calls.append((len(audio), audio_format, options))
        return self.response


def get_provider(name: str, **kwargs: Any) -> AsrProvider:
    """Select a provider by name.

    Args:
        name: Provider name ("google-cloud-speech" or "static").
        **kwargs: Passed to the provider constructor.

    Returns:
        Provider instance.

    Raises:
        ValueError: If the provider name is unknown.
    """
    if name == PROVIDER_GOOGLE:
        return GoogleSpeechProvider(**kwargs)

    if name == PROVIDER_STATIC:
        return StaticProvider(**kwargs)

    raise ValueError(f"Unknown ASR provider: {name}")


def provider_info(name: str) -> dict[str, Any]:
    """Describe a provider's supported formats, languages and features."""
    return {
        "provider": name,
        "supported_formats": sorted(GOOGLE_ENCODINGS),
        "supported_languages": list(SUPPORTED_LANGUAGES),
        "features": {
            "automatic_punctuation": True,
            "word_time_offsets": True,
            "speaker_diarization": True,
            "multiple_alternatives": True,
        },
    }
