"""Response validation with partial-response salvage.

A response that parses but does not satisfy the schema is never rejected:
it is rebuilt field by field, keeping every value that is present and
type-correct and substituting the documented default for the rest.
"""

import logging
import typing
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from iris.exceptions import VisionValidationError
from iris.schemas.vision import StructuredDescription
from iris.utils.llm_parse import parse_json_object

logger = logging.getLogger(__name__)

SALVAGE_NOTE = "Response partially recovered from invalid format"
SALVAGE_UNCERTAINTY_NOTE = "Response format was partially invalid"

M = TypeVar("M", bound=BaseModel)
D = TypeVar("D", bound=StructuredDescription)


def validate_response(raw: str, model_cls: type[D]) -> tuple[D, bool]:
    """Parse and validate raw model output.

    Returns:
        (instance, salvaged) where ``salvaged`` is True when the response had
        missing or wrong-shaped fields and was rebuilt from defaults.

    Raises:
        VisionValidationError: the output is not a JSON object at all
    """
    try:
        data = parse_json_object(raw)
    except ValueError as e:
        logger.warning("Unparseable vision response: %s | raw: %s", e, raw[:150])
        raise VisionValidationError("Invalid JSON response from vision API") from e

    try:
        result = model_cls.model_validate(data)
    except ValidationError as e:
        logger.warning(
            "Vision response failed %s validation (%d errors), salvaging",
            model_cls.__name__,
            e.error_count(),
        )
        return salvage(data, model_cls), True

    missing = missing_fields(result)
    if missing:
        logger.warning(
            "Vision response missing %d fields (%s), salvaging",
            len(missing),
            ", ".join(missing[:5]),
        )
        return salvage(data, model_cls), True

    return result, False


def salvage(data: Any, model_cls: type[D]) -> D:
    """Rebuild a schema-complete instance from a partial object."""
    result = coalesce(model_cls, data)
    result.metadata.processing_notes.append(SALVAGE_NOTE)
    result.uncertainty_notes.append(SALVAGE_UNCERTAINTY_NOTE)
    return result


def coalesce(model_cls: type[M], raw: Any) -> M:
    """Take each field from ``raw`` when valid, else the field's default."""
    data = raw if isinstance(raw, dict) else {}
    values: dict[str, Any] = {}

    for name, field in model_cls.model_fields.items():
        sub_model = _model_type(field.annotation)
        if sub_model is not None:
            values[name] = coalesce(sub_model, data.get(name))
            continue
        if name not in data:
            continue
        item_model = _list_item_model(field.annotation)
        if item_model is not None:
            values[name] = _valid_items(item_model, data[name])
        else:
            values[name] = data[name]

    try:
        return model_cls.model_validate(values)
    except ValidationError as e:
        bad = {err["loc"][0] for err in e.errors() if err["loc"]}
        kept = {k: v for k, v in values.items() if k not in bad}

    try:
        return model_cls.model_validate(kept)
    except ValidationError:
        logger.warning("Could not coalesce %s, using defaults", model_cls.__name__)
        return model_cls()


def missing_fields(model: BaseModel, prefix: str = "") -> list[str]:
    """Dotted paths of fields that were filled by defaults rather than input."""
    missing: list[str] = []
    for name in type(model).model_fields:
        path = f"{prefix}{name}"
        if name not in model.model_fields_set:
            missing.append(path)
            continue
        value = getattr(model, name)
        if isinstance(value, BaseModel):
            missing.extend(missing_fields(value, f"{path}."))
        elif isinstance(value, list):
            for i, item in enumerate(value):
                if isinstance(item, BaseModel):
                    missing.extend(missing_fields(item, f"{path}[{i}]."))
    return missing


def _model_type(annotation: Any) -> type[BaseModel] | None:
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return annotation
    return None


def _list_item_model(annotation: Any) -> type[BaseModel] | None:
    if typing.get_origin(annotation) is not list:
        return None
    args = typing.get_args(annotation)
    return _model_type(args[0]) if args else None


def _valid_items(item_model: type[M], raw: Any) -> list[M]:
    if not isinstance(raw, list):
        return []
    items: list[M] = []
    for entry in raw:
        try:
            items.append(item_model.model_validate(entry))
        except ValidationError:
            logger.debug("Dropping invalid %s item: %r", item_model.__name__, entry)
    return items
