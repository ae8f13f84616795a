"""
Step 2: Visual World — never executed, mapped straight from settings when
the job is created.
"""

from typing import Optional

from .models import GenerationSettings, VisualWorldData


def _reference_url(item) -> Optional[str]:
    # Uploaded files arrive as {"previewUrl": ...}; pasted links as strings.
    if isinstance(item, str):
        return item or None
    if isinstance(item, dict):
        return item.get("previewUrl") or item.get("url")
    return None


def build_visual_world(settings: GenerationSettings) -> VisualWorldData:
    vw = settings.visual_world
    references = [u for u in (_reference_url(i) for i in vw.reference_images) if u]
    return VisualWorldData(
        art_style=vw.art_style or "cinematic",
        visual_elements=list(vw.visual_elements),
        visual_rhythm=vw.visual_rhythm or "breathing",
        reference_images=references,
        image_custom_instructions=vw.image_custom_instructions,
        music_style=settings.soundscape.music_style,
    )
