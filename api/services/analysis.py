import asyncio
import json
import logging
import re
from typing import Tuple

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from lib.error_handler import AnalysisError
from lib.models import StressAnalysisResult, utcnow

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert in analyzing voice recordings to detect stress levels. "
    "Analyze the provided voice recording and determine the stress level on a scale of 0 to 100, "
    "where 0 indicates no stress and 100 indicates maximum stress. "
    "Also provide a detailed analysis of the voice recording, explaining the factors that "
    "contribute to the detected stress level."
)

OUTPUT_INSTRUCTIONS = (
    "Respond with a single JSON object and nothing else, matching this schema: "
    "{\"stressLevel\": number, \"analysisDetails\": string}"
)

DATA_URI_PATTERN = re.compile(
    r'^data:(?P<mime>[\w.+-]+/[\w.+-]+(?:;[^;,=]+=[^;,]+)*);base64,(?P<data>.+)$', re.DOTALL
)

FENCE_PATTERN = re.compile(r'^```(?:json)?\s*|\s*```$')

class VoiceStressOutput(BaseModel):
    stressLevel: float = Field(
        allow_inf_nan=False,
        description='The detected stress level, on a scale of 0 to 100.'
    )
    analysisDetails: str = Field(description='Detailed analysis of the voice recording related to stress.')

def build_data_uri(payload: str, media_type: str) -> str:
    return f"data:{media_type};base64,{payload}"

def split_data_uri(data_uri: str) -> Tuple[str, str]:
    match = DATA_URI_PATTERN.match(data_uri)
    if not match:
        raise AnalysisError("Voice recording must be a base64 data URI with a MIME type.")
    return match.group('mime'), match.group('data')

class AnalysisGateway:
    """Sends one recording to the hosted model and normalizes the answer.

    One call per recording, no retries. ``stressLevel`` is passed through
    unclamped.
    """

    FORMAT_MAP = {
        'audio/wav': 'wav',
        'audio/x-wav': 'wav',
        'audio/wave': 'wav',
        'audio/vnd.wave': 'wav',
        'audio/mp3': 'mp3',
        'audio/mpeg': 'mp3',
    }

    def __init__(self, openai_client, model: str = 'gpt-4o-audio-preview'):
        self.client = openai_client
        self.model = model
        logger.info(f"Analysis gateway initialized with model: {model}")

    def _get_format_from_media_type(self, media_type: str) -> str:
        base_type = media_type.split(';')[0].strip().lower()
        audio_format = self.FORMAT_MAP.get(base_type)
        if not audio_format:
            logger.error(f"Unsupported audio media type: {media_type}")
            raise AnalysisError(f"AI analysis failed: unsupported audio format '{media_type}'.")
        return audio_format

    async def analyze(self, payload: str, media_type: str) -> StressAnalysisResult:
        if not payload or not media_type:
            raise AnalysisError("Base64 audio data and MIME type are required.")
        if self.client is None:
            raise AnalysisError("AI analysis failed: the analysis service is not configured.")

        data_uri = build_data_uri(payload, media_type)
        try:
            raw_output = await self._invoke(data_uri)
            output = self._parse_output(raw_output)
        except AnalysisError:
            raise
        except Exception as e:
            logger.error(f"Error analyzing voice stress: {str(e)}")
            raise AnalysisError(f"AI analysis failed: {str(e)}") from e

        result = StressAnalysisResult(
            stress_level=round(output.stressLevel),
            analysis_details=output.analysisDetails,
            timestamp=utcnow(),
        )
        logger.info(f"Stress analysis complete: level {result.stress_level}")
        return result

    async def _invoke(self, data_uri: str) -> str:
        media_type, data = split_data_uri(data_uri)
        audio_format = self._get_format_from_media_type(media_type)

        logger.info(f"Requesting stress analysis ({audio_format}, {len(data)} base64 chars)")
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": OUTPUT_INSTRUCTIONS},
                    {"type": "input_audio", "input_audio": {"data": data, "format": audio_format}},
                ],
            },
        ]
        # Run the blocking OpenAI call in an executor to keep the loop free
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(
            None,
            lambda: self.client.chat.completions.create(
                model=self.model,
                modalities=["text"],
                messages=messages
            )
        )

        if not response.choices or not response.choices[0].message.content:
            raise AnalysisError("AI analysis failed: the model returned no analysis.")
        return response.choices[0].message.content

    def _parse_output(self, raw_output: str) -> VoiceStressOutput:
        text = FENCE_PATTERN.sub('', raw_output.strip())
        try:
            return VoiceStressOutput.model_validate(json.loads(text))
        except (json.JSONDecodeError, PydanticValidationError) as e:
            logger.error(f"Malformed analysis response: {raw_output[:200]}")
            raise AnalysisError("AI analysis failed: the model returned a malformed response.") from e
