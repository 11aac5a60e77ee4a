"""Portrait style catalog and prompt construction."""

from typing import Dict, List, Optional

from services.errors import ProviderPermanentError

FACE_LOCK = "Keep the facial features of the person in the uploaded image exactly consistent."

STYLE_CATALOG: Dict[str, Dict[str, str]] = {
    "business": {
        "name": "Business Photo",
        "description": "Professional corporate headshot for LinkedIn and company profiles",
        "prompt": (
            "Dress them in a navy business suit with a white shirt against a dark gray studio "
            "backdrop with a soft vignette. Classic three-point lighting, 85mm portrait lens, "
            "natural skin texture. Ultra-realistic professional headshot."
        ),
    },
    "emotional_film": {
        "name": "Emotional Film Photography",
        "description": "Cinematic film look with rich colors and emotional depth",
        "prompt": (
            "Render a cinematic 35mm film portrait with rich, warm color grading, gentle grain "
            "and soft window light. Quiet, emotional mood with shallow depth of field."
        ),
    },
    "editorial": {
        "name": "Editorial Fashion",
        "description": "Glamorous high-fashion runway and editorial style",
        "prompt": (
            "Style a high-fashion editorial shoot with polished styling, glossy beauty lighting "
            "and a seamless studio background. Magazine-cover quality."
        ),
    },
    "corporate": {
        "name": "Corporate Executive",
        "description": "Professional navy suit with studio backdrop for executives",
        "prompt": (
            "Dress them as a corporate executive in a tailored navy suit. Dark gray studio "
            "backdrop, three-point lighting with a subtle rim light. Crisp professional headshot."
        ),
    },
    "creative": {
        "name": "Creative Professional",
        "description": "Smart casual with a modern office setting",
        "prompt": (
            "Dress them in smart casual clothing in a bright modern office with blurred "
            "background details. Natural daylight, relaxed confident expression."
        ),
    },
    "friendly": {
        "name": "Friendly Business",
        "description": "Approachable oxford shirt look for team pages",
        "prompt": (
            "Dress them in a light blue oxford shirt without a jacket against a warm cream "
            "gradient background. Soft diffused light and a genuine, warm smile."
        ),
    },
}

FEATURED_STYLES = ("business", "emotional_film", "editorial")
CUSTOM_STYLE = "custom"
EDIT_STYLE = "edit"


def list_styles() -> List[Dict[str, str]]:
    return [
        {"key": key, "name": STYLE_CATALOG[key]["name"], "description": STYLE_CATALOG[key]["description"]}
        for key in FEATURED_STYLES
    ]


def is_known_style(style_key: str) -> bool:
    return style_key in STYLE_CATALOG or style_key in (CUSTOM_STYLE, EDIT_STYLE)


def build_prompt(
    style_key: str,
    custom_prompt: Optional[str] = None,
    edit_prompt: Optional[str] = None,
) -> str:
    """Resolve the provider prompt for a job; unusable inputs are permanent failures."""
    if style_key == EDIT_STYLE:
        text = (edit_prompt or "").strip()
        if not text:
            raise ProviderPermanentError("Edit requests require an edit prompt")
        return f"{FACE_LOCK} Apply this edit to the portrait and change nothing else: {text}"
    if style_key == CUSTOM_STYLE:
        text = (custom_prompt or "").strip()
        if not text:
            raise ProviderPermanentError("Custom style requires a custom prompt")
        return f"{FACE_LOCK} {text}"
    style = STYLE_CATALOG.get(style_key)
    if style is None:
        raise ProviderPermanentError(f"Unknown style: {style_key}")
    return f"{FACE_LOCK} {style['prompt']}"
