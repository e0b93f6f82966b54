"""Operation types: model, price per item and poll policy."""

import random
from dataclasses import dataclass, field
from typing import Any

from propstudio.core.config import Settings
from propstudio.core.exceptions import BadRequestError

VIDEO_PROMPT = (
    "create a subtle and smooth camera motion for this image, that does not remove or change "
    "anything, keep everything exactly as it is and make sure your camera movement only stays "
    "in the bounds of the original image"
)


@dataclass(frozen=True)
class PollPolicy:
    interval_seconds: float
    max_attempts: int
    jitter_seconds: float = 0.0
    max_poll_errors: int = 3

    def next_delay(self) -> float:
        if self.jitter_seconds <= 0:
            return self.interval_seconds
        return self.interval_seconds + random.uniform(0, self.jitter_seconds)

    @property
    def ceiling_seconds(self) -> float:
        return self.interval_seconds * self.max_attempts


@dataclass(frozen=True)
class OperationProfile:
    name: str
    model: str
    credits_per_item: int
    poll: PollPolicy
    input_key: str = "image"
    extra_input: dict[str, Any] = field(default_factory=dict)

    def build_input(self, input_ref: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return {**self.extra_input, **(params or {}), self.input_key: input_ref}


def build_profiles(settings: Settings) -> dict[str, OperationProfile]:
    def policy(interval: float, attempts: int) -> PollPolicy:
        return PollPolicy(
            interval_seconds=interval,
            max_attempts=attempts,
            jitter_seconds=settings.poll_jitter_seconds,
            max_poll_errors=settings.poll_max_errors,
        )

    profiles = [
        OperationProfile(
            name="image_edit",
            model="qwen/qwen-image-edit",
            credits_per_item=settings.credits_per_image_edit,
            poll=policy(settings.poll_interval_image_edit, settings.poll_max_attempts_image_edit),
            input_key="image",
            extra_input={"output_format": "png"},
        ),
        OperationProfile(
            name="ocr",
            model="datalab-to/ocr",
            credits_per_item=settings.credits_per_ocr,
            poll=policy(settings.poll_interval_ocr, settings.poll_max_attempts_ocr),
            input_key="file",
        ),
        OperationProfile(
            name="video",
            model="kwaivgi/kling-v2.5-turbo-pro",
            credits_per_item=settings.credits_per_video,
            poll=policy(settings.poll_interval_video, settings.poll_max_attempts_video),
            input_key="start_image",
            extra_input={"prompt": VIDEO_PROMPT, "duration": 5, "aspect_ratio": "16:9", "negative_prompt": ""},
        ),
        OperationProfile(
            name="voice_clone",
            model="684bc3855b37866c0c65add2ff39c78f3dea3f4ff103a436465326e0f438d55e",
            credits_per_item=settings.credits_per_voice_clone,
            poll=policy(settings.poll_interval_voice_clone, settings.poll_max_attempts_voice_clone),
            input_key="speaker",
            extra_input={"language": "en", "cleanup_voice": False},
        ),
        OperationProfile(
            name="avatar",
            model="lucataco/talking-avatar",
            credits_per_item=settings.credits_per_avatar,
            poll=policy(settings.poll_interval_avatar, settings.poll_max_attempts_avatar),
            input_key="image",
            extra_input={"captions": True, "duration": 10, "resolution": "720p"},
        ),
    ]
    return {p.name: p for p in profiles}


def get_profile(profiles: dict[str, OperationProfile], name: str) -> OperationProfile:
    try:
        return profiles[name]
    except KeyError:
        raise BadRequestError(f"Unknown operation: {name}", details={"operations": sorted(profiles)}) from None
