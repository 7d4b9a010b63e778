"""
Prompt composition for batch submissions.

Style lock lets reference images steer appearance; scene lock reuses the
first reference as the target so its background is preserved (and
disables background removal).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from PIL import Image

from .models import GenerationConfig, JobSpec, ModelTier

STUDIO_COLORS = {
    "#FFFFFF": "PURE SOLID FLAT WHITE (#FFFFFF) BACKGROUND. NO SHADOWS, NO GLOWS.",
    "#000000": "PURE SOLID DEEP BLACK (#000000) BACKGROUND. TOTAL DARKNESS, NO LIGHT SPILL.",
    "#00FF00": (
        "PURE FLAT CHROMA KEY GREEN (#00FF00) BACKGROUND. UNIFORM SATURATION, NO SHADOWS, "
        "OPTIMIZED FOR COMPOSITING."
    ),
    "#0000FF": (
        "PURE FLAT CHROMA KEY BLUE (#0000FF) BACKGROUND. UNIFORM SATURATION, NO SHADOWS, "
        "OPTIMIZED FOR COMPOSITING."
    ),
    "#808080": "SOLID NEUTRAL MID-GREY (#808080) BACKGROUND. FLAT LIGHTING.",
}
STUDIO_WHITE = "#FFFFFF"

LIGHTING_OPTIONS = (
    "Cinematic Studio",
    "Golden Hour",
    "Dramatic Noir",
    "Cyberpunk Neon",
    "Soft Natural Portait",
    "High-Key Commercial",
    "Rim Lighting",
    "Mystical Glow",
)

BACKGROUND_TYPES = {"none", "studio", "gradient", "pattern", "artistic"}

PRO_HEADER = (
    "[MASTER PRODUCTION DIRECTIVE]: Generate with absolute high-fidelity 8k resolution. "
    "Maintain 100% shader and material parity across the sequence."
)
PRO_STYLE_LOCK = (
    "\n[STYLE DNA LOCK]: Extract precisely the material shaders, specular roughness, and color "
    "science from the attached reference images. Do not deviate from this visual identity."
)
PRO_FOOTER = "[FINAL QUALITY]: Commercial studio photography, extremely detailed textures, sharp edges."


@dataclass
class PromptOptions:
    lighting: Optional[str] = None
    background_type: str = "none"
    studio_color: Optional[str] = None
    background_value: str = ""
    transparent: bool = False
    preserve_background: bool = False
    style_strength: int = 85
    maintain_identity: bool = True

    def __post_init__(self) -> None:
        self.background_type = (self.background_type or "none").lower()
        if self.background_type not in BACKGROUND_TYPES:
            raise ValueError(f"background_type must be one of {sorted(BACKGROUND_TYPES)}")
        if self.lighting and self.lighting.lower() == "none":
            self.lighting = None
        self.style_strength = max(0, min(100, int(self.style_strength)))

    @property
    def wants_background_removal(self) -> bool:
        return self.transparent and not self.preserve_background

    def background_phrase(self) -> str:
        if self.preserve_background:
            return ""
        # White renders the cleanest luminance key.
        if self.transparent:
            return STUDIO_COLORS[STUDIO_WHITE]
        if self.background_type == "studio":
            return STUDIO_COLORS.get((self.studio_color or "").upper(), "")
        value = self.background_value.strip()
        if self.background_type == "none" or not value:
            return ""
        if self.background_type == "gradient":
            return f"on a {value} gradient background"
        if self.background_type == "pattern":
            return f"on a background pattern of {value}"
        return f"on a creative background featuring {value}"

    def target_for_scene_lock(self, reference_images: Sequence[Image.Image]) -> Optional[Image.Image]:
        if self.preserve_background and reference_images:
            return reference_images[0]
        return None


def compose_prompt(text: str, options: PromptOptions, has_references: bool) -> str:
    prompt = text.strip()
    if options.lighting:
        prompt += f", {options.lighting.lower()} style"
    background = options.background_phrase()
    if background:
        prompt += f", {background}"
    if has_references:
        prompt += f"\n\n[STYLE]: Extract visual DNA from references with {options.style_strength}% weight."
        if options.maintain_identity:
            prompt += " Match identity precisely."
    return prompt


def build_professional_prompt(prompt: str, tier: ModelTier, has_references: bool) -> str:
    """The pro tier needs rigid technical directives; standard passes through."""
    if tier != ModelTier.PRO:
        return prompt
    style_lock = PRO_STYLE_LOCK if has_references else ""
    return f"{PRO_HEADER}{style_lock}\n\n[SCENE DESCRIPTION]: {prompt}\n\n{PRO_FOOTER}"


def build_batch_specs(
    lines: Iterable[str],
    config: GenerationConfig,
    options: Optional[PromptOptions] = None,
    reference_images: Sequence[Image.Image] = (),
    mode: str = "BATCH",
) -> List[JobSpec]:
    """Turn raw prompt lines into JobSpecs, skipping blank lines."""
    options = options or PromptOptions()
    references = tuple(reference_images)
    target = options.target_for_scene_lock(references)
    specs: List[JobSpec] = []
    for line in lines:
        if not line or not line.strip():
            continue
        specs.append(
            JobSpec(
                prompt_text=compose_prompt(line, options, bool(references)),
                reference_images=references,
                target_image=target,
                config=config,
                remove_background=options.wants_background_removal,
                label=f"img_{len(specs) + 1}",
                mode=mode,
            )
        )
    return specs
