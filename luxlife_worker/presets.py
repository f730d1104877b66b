"""
Scene Library — the backdrops a customer can pick on the order form.

The customer picks a scene, we turn it into the actual generation prompt
and the line the portrait speaks.
"""

from typing import Optional

SCENES = {
    "rooftop-sunset": {
        "id": "rooftop-sunset",
        "name": "Rooftop Sunset",
        "description": "Golden-hour skyline from a private rooftop terrace.",
    },
    "supercar-night": {
        "id": "supercar-night",
        "name": "Supercar Night Run",
        "description": "City lights streaking past a supercar after dark.",
    },
    "tropical-infinity": {
        "id": "tropical-infinity",
        "name": "Tropical Infinity Pool",
        "description": "An infinity pool melting into a turquoise lagoon.",
    },
}

BACKGROUND_PREAMBLE = (
    "luxury lifestyle cinematic background, 4k, ultra high definition, "
    "golden hour lighting, bokeh, elegant modern architecture, depth of field, film still"
)

DEFAULT_VOICE_SCRIPT = "Living my best life with LuxLife's AI studio."


def get_scene(scene_id: str) -> Optional[dict]:
    """Get a scene by ID. Returns None if not found."""
    return SCENES.get(scene_id)


def list_scenes() -> list:
    return list(SCENES.values())


def scene_label(scene: Optional[str], scene_id: Optional[str]) -> Optional[str]:
    """Human label for an order: the stored label, else the catalog name, else the raw id."""
    if scene:
        return scene
    if scene_id:
        preset = get_scene(scene_id)
        return preset["name"] if preset else scene_id
    return None


def build_background_prompt(
    scene: Optional[str] = None,
    scene_id: Optional[str] = None,
    tagline: Optional[str] = None,
    prompt: Optional[str] = None,
) -> str:
    """Fixed cinematic preamble followed by whichever order details are present."""
    extras = [part for part in (scene or scene_id, tagline, prompt) if part]
    if not extras:
        return BACKGROUND_PREAMBLE
    return f"{BACKGROUND_PREAMBLE}, {', '.join(extras)}"


def build_voice_script(tagline: Optional[str] = None, scene: Optional[str] = None) -> str:
    """Tagline if given, else a line naming the scene, else the house default."""
    if tagline and tagline.strip():
        return tagline.strip()
    if scene:
        return f"Hi, I'm living the LuxLife in {scene}."
    return DEFAULT_VOICE_SCRIPT
