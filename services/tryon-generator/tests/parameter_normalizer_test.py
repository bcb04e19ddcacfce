import pytest

from core.exceptions import ValidationException
from domain.models import GenerationParameters, OutputFormat, PersonGeneration, SafetySetting
from processors.parameter_normalizer import ParameterNormalizer, parse_form_parameters


@pytest.fixture
def normalizer():
    return ParameterNormalizer()


def test_defaults_applied_for_missing_input(normalizer):
    params = normalizer.normalize(None)

    assert params.add_watermark is True
    assert params.base_steps == 32
    assert params.person_generation == PersonGeneration.ALLOW_ADULT
    assert params.safety_setting == SafetySetting.BLOCK_MEDIUM_AND_ABOVE
    assert params.sample_count == 1
    assert params.seed == 0
    assert params.output_format == OutputFormat.PNG
    # PNG output has no compression quality
    assert params.compression_quality == 0


def test_partial_input_is_completed_with_defaults(normalizer):
    params = normalizer.normalize({"sample_count": 3})

    assert params.sample_count == 3
    assert params.base_steps == 32


def test_watermark_forces_seed_and_png_forces_quality(normalizer):
    params = normalizer.normalize(
        {"add_watermark": True, "seed": 999, "output_format": "image/png", "compression_quality": 50}
    )

    assert params.seed == 0
    assert params.compression_quality == 0


def test_jpeg_without_watermark_keeps_seed_and_quality(normalizer):
    params = normalizer.normalize(
        {"add_watermark": False, "seed": 42, "output_format": "image/jpeg", "compression_quality": 60}
    )

    assert params.seed == 42
    assert params.compression_quality == 60
    assert params.output_mime_type == "image/jpeg"


@pytest.mark.parametrize("field,value", [("base_steps", 0), ("base_steps", 101), ("sample_count", 0), ("sample_count", 5), ("compression_quality", -1), ("compression_quality", 101)])
def test_out_of_range_values_are_rejected(normalizer, field, value):
    with pytest.raises(ValidationException) as exc_info:
        normalizer.normalize({field: value, "output_format": "image/jpeg"})

    assert field in str(exc_info.value)


@pytest.mark.parametrize("steps", [1, 100])
def test_base_steps_bounds_are_inclusive(normalizer, steps):
    assert normalizer.normalize({"base_steps": steps}).base_steps == steps


def test_quality_range_checked_before_png_override(normalizer):
    # Range validation happens first, the PNG override does not hide it
    with pytest.raises(ValidationException):
        normalizer.normalize({"output_format": "image/png", "compression_quality": 150})


def test_unknown_enum_value_is_rejected(normalizer):
    with pytest.raises(ValidationException):
        normalizer.normalize({"safety_setting": "block_everything"})


@pytest.mark.parametrize(
    "raw",
    [
        {},
        {"add_watermark": True, "seed": 7, "compression_quality": 90},
        {"add_watermark": False, "seed": 7, "output_format": "image/jpeg", "compression_quality": 90},
        {"sample_count": 4, "person_generation": "dont_allow", "safety_setting": "block_none"},
    ],
)
def test_normalize_is_idempotent(normalizer, raw):
    once = normalizer.normalize(raw)
    twice = normalizer.normalize(once)

    assert twice == once


def test_parameters_are_immutable():
    params = GenerationParameters()

    with pytest.raises(Exception):
        params.seed = 5  # type: ignore[misc]


# --- Form layer ---


def test_form_empty_fields_fall_back_to_defaults():
    params = parse_form_parameters({})

    assert params["add_watermark"] is True
    assert params["base_steps"] == 32
    assert params["output_format"] == "image/png"
    assert params["compression_quality"] == 0


def test_form_out_of_range_values_fall_back_instead_of_failing():
    params = parse_form_parameters(
        {"base_steps": "500", "sample_count": "9", "compression_quality": "abc", "output_mime_type": "image/jpeg"}
    )

    assert params["base_steps"] == 32
    assert params["sample_count"] == 1
    assert params["compression_quality"] == 75


def test_form_watermark_only_true_for_literal_true():
    assert parse_form_parameters({"add_watermark": "false"})["add_watermark"] is False
    assert parse_form_parameters({"add_watermark": "yes"})["add_watermark"] is False
    assert parse_form_parameters({"add_watermark": "true"})["add_watermark"] is True


def test_form_seed_dropped_when_watermarked():
    assert parse_form_parameters({"seed": "123"})["seed"] == 0
    assert parse_form_parameters({"seed": "123", "add_watermark": "false"})["seed"] == 123


def test_form_output_feeds_the_strict_normalizer(normalizer):
    form = {"add_watermark": "false", "seed": "5", "output_mime_type": "image/jpeg", "compression_quality": "80"}

    params = normalizer.normalize(parse_form_parameters(form))

    assert params.seed == 5
    assert params.compression_quality == 80
    assert params.output_format == OutputFormat.JPEG


@pytest.mark.parametrize("name,expected", [("PNG", OutputFormat.PNG), ("jpeg", OutputFormat.JPEG)])
def test_output_format_accepts_bare_names(normalizer, name, expected):
    assert normalizer.normalize({"output_format": name}).output_format == expected


def test_form_output_format_accepts_bare_names():
    params = parse_form_parameters({"output_mime_type": "JPEG", "compression_quality": "60"})

    assert params["output_format"] == "image/jpeg"
    assert params["compression_quality"] == 60


def test_unknown_output_format_is_rejected(normalizer):
    with pytest.raises(ValidationException):
        normalizer.normalize({"output_format": "image/bmp"})
