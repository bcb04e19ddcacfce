from typing import Any, Mapping, Optional, Union

import structlog
from pydantic import ValidationError

from core.exceptions import ValidationException
from domain.models import GenerationParameters, OutputFormat

logger = structlog.get_logger()

RawParameters = Union[GenerationParameters, Mapping[str, Any], None]


class ParameterNormalizer:
    """
    Turns raw parameters into a validated GenerationParameters.
    Pure: normalizing an already normalized object returns an equal object.
    """

    def normalize(self, raw: RawParameters = None) -> GenerationParameters:
        if raw is None:
            return GenerationParameters()

        try:
            if isinstance(raw, GenerationParameters):
                return GenerationParameters.model_validate(raw.model_dump())
            return GenerationParameters.model_validate(dict(raw))
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'parameters'}: {err['msg']}"
                for err in e.errors()
            )
            logger.info("invalid_parameters", problems=problems)
            raise ValidationException(f"invalid parameters: {problems}", e)


# --- Form layer ---
# Free-form request fields never fail: anything unusable falls back to the
# default and the object above does the strict checking.


def _default(field: str) -> Any:
    # Declared field defaults, before provider restrictions are applied
    default = GenerationParameters.model_fields[field].default
    return getattr(default, "value", default)


def _get_str(form: Mapping[str, Any], key: str, default: str) -> str:
    value = form.get(key)
    if value is None or value == "":
        return default
    return str(value)


def _get_bool(form: Mapping[str, Any], key: str, default: bool) -> bool:
    value = form.get(key)
    if value is None or value == "":
        return default
    return str(value) == "true"


def _get_int(
    form: Mapping[str, Any],
    key: str,
    default: int,
    minimum: Optional[int] = None,
    maximum: Optional[int] = None,
) -> int:
    value = form.get(key)
    if value is None or value == "":
        return default

    try:
        parsed = int(str(value))
    except ValueError:
        return default

    if minimum is not None and parsed < minimum:
        return default
    if maximum is not None and parsed > maximum:
        return default
    return parsed


def parse_form_parameters(form: Mapping[str, Any]) -> dict[str, Any]:
    """
    Reads try-on parameters from multipart/query fields.

    Field names: add_watermark, base_steps, person_generation, safety_setting,
    sample_count, seed, output_mime_type, compression_quality.
    """
    params: dict[str, Any] = {
        "add_watermark": _get_bool(form, "add_watermark", _default("add_watermark")),
        "base_steps": _get_int(form, "base_steps", _default("base_steps"), 1, 100),
        "person_generation": _get_str(
            form, "person_generation", _default("person_generation")
        ),
        "safety_setting": _get_str(form, "safety_setting", _default("safety_setting")),
        "sample_count": _get_int(form, "sample_count", _default("sample_count"), 1, 4),
        "seed": _get_int(form, "seed", _default("seed")),
        "output_format": OutputFormat.coerce(
            _get_str(form, "output_mime_type", _default("output_format"))
        ),
        "compression_quality": _get_int(
            form, "compression_quality", _default("compression_quality"), 0, 100
        ),
    }

    # Provider restrictions, same as GenerationParameters enforces
    if params["output_format"] != OutputFormat.JPEG.value:
        params["compression_quality"] = 0
    if params["add_watermark"]:
        params["seed"] = 0

    return params
