import pytest

from conftest import solid
from genbatch_service.models import (
    GenerationConfig,
    JobKind,
    JobSpec,
    JobState,
    JobStatus,
    ModelTier,
    Resolution,
)
from genbatch_service.prompts import (
    PRO_HEADER,
    STUDIO_COLORS,
    PromptOptions,
    build_batch_specs,
    build_professional_prompt,
    compose_prompt,
)


def test_blank_prompt_is_rejected():
    with pytest.raises(ValueError):
        JobSpec(prompt_text="   \n ")


def test_prompt_is_trimmed_and_id_generated():
    a, b = JobSpec(prompt_text="  a cat "), JobSpec(prompt_text="a dog")
    assert a.prompt_text == "a cat"
    assert a.id and a.id != b.id


def test_video_job_requires_source_image():
    with pytest.raises(ValueError):
        JobSpec(prompt_text="move", kind=JobKind.VIDEO)
    spec = JobSpec(prompt_text="move", kind=JobKind.VIDEO, reference_images=[solid()])
    assert spec.source_image is spec.reference_images[0]


def test_from_lines_skips_blanks_and_labels():
    specs = JobSpec.from_lines("one\n\n  two  \n")
    assert [s.prompt_text for s in specs] == ["one", "two"]
    assert [s.label for s in specs] == ["img_1", "img_2"]


def test_resolution_gated_by_tier():
    assert GenerationConfig(tier="standard", resolution="4K").resolution == Resolution.R1K
    assert GenerationConfig(tier="pro", resolution="4K").resolution == Resolution.R4K


def test_invalid_aspect_ratio_rejected():
    with pytest.raises(ValueError):
        GenerationConfig(aspect_ratio="7:3")


def test_job_state_dict():
    state = JobState(job_id="j1", prompt="p", status=JobStatus.PROCESSING, attempt=1)
    data = state.to_dict()
    assert data["status"] == "processing"
    assert data["error"] is None
    assert not state.is_terminal


def test_compose_prompt_lighting_and_background():
    options = PromptOptions(lighting="Golden Hour", background_type="gradient", background_value="teal")
    assert compose_prompt("a vase", options, False) == "a vase, golden hour style, on a teal gradient background"


def test_transparent_forces_white_studio_background():
    options = PromptOptions(transparent=True, background_type="pattern", background_value="dots")
    assert compose_prompt("logo", options, False) == f"logo, {STUDIO_COLORS['#FFFFFF']}"
    assert options.wants_background_removal


def test_preserve_background_disables_cutout_and_background_phrase():
    options = PromptOptions(transparent=True, preserve_background=True)
    assert compose_prompt("logo", options, False) == "logo"
    assert not options.wants_background_removal


def test_style_directive_with_references():
    options = PromptOptions(style_strength=60, maintain_identity=False)
    prompt = compose_prompt("hero", options, True)
    assert prompt.endswith("with 60% weight.")
    assert "Match identity precisely." in compose_prompt("hero", PromptOptions(), True)


def test_unknown_background_type_rejected():
    with pytest.raises(ValueError):
        PromptOptions(background_type="plasma")


def test_professional_prompt_only_for_pro():
    assert build_professional_prompt("x", ModelTier.STANDARD, True) == "x"
    pro = build_professional_prompt("x", ModelTier.PRO, True)
    assert pro.startswith(PRO_HEADER)
    assert "[STYLE DNA LOCK]" in pro
    assert "[SCENE DESCRIPTION]: x" in pro
    assert "[STYLE DNA LOCK]" not in build_professional_prompt("x", ModelTier.PRO, False)


def test_build_batch_specs_scene_lock():
    ref = solid()
    options = PromptOptions(preserve_background=True, transparent=True)
    specs = build_batch_specs(["a", "", "b"], GenerationConfig(), options, [ref])
    assert len(specs) == 2
    assert all(s.target_image is ref for s in specs)
    assert not any(s.remove_background for s in specs)
    assert [s.label for s in specs] == ["img_1", "img_2"]


def test_build_batch_specs_transparent():
    specs = build_batch_specs(["a"], GenerationConfig(), PromptOptions(transparent=True))
    assert specs[0].remove_background
    assert specs[0].target_image is None
