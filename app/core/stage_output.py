"""Stage output normalization.

Cleans raw generated text before it is persisted:
- strips incidental code-fence wrappers (```json ... ```) at the ends only
- for JSON-shaped stages, parses and validates against the stage schema
"""

import json
import re
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError

from app.core.pipeline_errors import NormalizationError
from app.core.schemas_pipeline import StageId, StockLibraryData
from app.core.stage_graph import get_definition

_OPENING_FENCE = re.compile(r"\A```[A-Za-z0-9_+.-]*[ \t]*\r?\n?")
_CLOSING_FENCE = re.compile(r"\r?\n?```\Z")


@dataclass(frozen=True)
class NormalizedOutput:
    text: str
    data: Any = None  # parsed JSON for JSON-shaped stages


def _has_fence(text: str) -> bool:
    stripped = text.strip()
    return stripped.startswith("```") or stripped.endswith("```")


def strip_code_fences(raw_text: str) -> str:
    """Remove leading/trailing code-fence markers and the whitespace around them.

    Text without fence markers at either end is returned unchanged. Nested
    wrappers are peeled until none remain, so the function is idempotent.
    """
    cleaned = raw_text
    while _has_fence(cleaned):
        cleaned = cleaned.strip()
        if cleaned.startswith("```"):
            cleaned = _OPENING_FENCE.sub("", cleaned, count=1)
        if cleaned.endswith("```"):
            cleaned = _CLOSING_FENCE.sub("", cleaned, count=1)
        cleaned = cleaned.strip()
    return cleaned


def parse_json_payload(text: str, schema: type[BaseModel] | None = None) -> Any:
    """Parse fence-free text as JSON and validate it against ``schema``.

    Raises:
        json.JSONDecodeError: If the text is not JSON
        pydantic.ValidationError: If the parsed JSON doesn't match ``schema``
    """
    parsed = json.loads(text)
    if isinstance(parsed, str):
        # Anthropic string bug guard: JSON delivered as a JSON string
        parsed = json.loads(parsed)
    if schema is not None:
        schema.model_validate(parsed)
    return parsed


def normalize(
    raw_text: str,
    expects_json: bool,
    schema: type[BaseModel] | None = None,
) -> NormalizedOutput:
    """
    Normalize raw generated text.

    Args:
        raw_text: Text exactly as received from the provider or operator
        expects_json: Whether the stage output must be JSON
        schema: Optional pydantic model the JSON must satisfy

    Returns:
        NormalizedOutput with the fence-stripped text and, for JSON, the parsed data

    Raises:
        NormalizationError: JSON parse or schema failure; carries ``raw_text``
    """
    text = strip_code_fences(raw_text)
    if not expects_json:
        return NormalizedOutput(text=text)

    try:
        data = parse_json_payload(text, schema)
    except json.JSONDecodeError as e:
        raise NormalizationError(f"Output is not valid JSON: {e}", raw_text=raw_text) from e
    except SchemaValidationError as e:
        name = schema.__name__ if schema else "schema"
        raise NormalizationError(
            f"Output does not match {name}: {e.error_count()} validation error(s)",
            raw_text=raw_text,
        ) from e

    return NormalizedOutput(text=json.dumps(data, indent=2, ensure_ascii=False), data=data)


def normalize_stage_output(raw_text: str, stage: StageId) -> NormalizedOutput:
    """Normalize ``raw_text`` using the shape declared for ``stage``."""
    definition = get_definition(stage)
    return normalize(raw_text, definition.expects_json, definition.schema)


# =============================================================================
# S5 JSON -> text section for the document assembler
# =============================================================================

_PLATFORM_LABELS = {
    "adobeStock": "ADOBE STOCK",
    "artlist": "ARTLIST",
    "storyblocks": "STORYBLOCKS",
    "envatoElements": "ENVATO ELEMENTS",
    "epidemicSound": "EPIDEMIC SOUND",
}


def _platform_label(key: str) -> str:
    if key in _PLATFORM_LABELS:
        return _PLATFORM_LABELS[key]
    return re.sub(r"(?<!^)([A-Z])", r" \1", key).upper()


def render_stock_library_text(data: dict[str, Any]) -> str:
    """Render S5 stock-library JSON as plain text lines for typesetting."""
    library = StockLibraryData.model_validate(data)
    lines: list[str] = []

    for asset in library.assets:
        lines.append(asset.assetId)
        if asset.assetType:
            lines.append(f"Type: {asset.assetType}")
        if asset.scriptContext:
            lines.append(f"Context: {asset.scriptContext}")
        for platform, queries in asset.searches.items():
            if not queries:
                continue
            lines.append(f"{_platform_label(platform)}:")
            lines.extend(f"  - {query}" for query in queries)
        if asset.selectionCriteria:
            lines.append("SELECTION CRITERIA:")
            lines.extend(f"  - {criterion}" for criterion in asset.selectionCriteria)
        if asset.backupOptions:
            lines.append("BACKUP OPTIONS:")
            lines.extend(f"  - {option}" for option in asset.backupOptions)
        lines.append("")

    naming = library.fileOrganization.get("namingConvention")
    if naming:
        lines.append("FILE ORGANIZATION")
        lines.append(f"Naming convention: {naming}")

    return "\n".join(lines).rstrip("\n")
