"""Style templates and prompt merging."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from batchforge.orchestrator.models import BASE_STYLE_ID

logger = logging.getLogger(__name__)

PROMPT_PLACEHOLDER = "{prompt}"


@dataclass(slots=True, frozen=True)
class StyleTemplate:
    """Positive prompt template with a ``{prompt}`` placeholder and negative additions."""

    style_id: str
    name: str
    positive_prompt: str
    negative_prompt: str = ""


@dataclass(slots=True, frozen=True)
class MergedPrompt:
    final_prompt: str
    negative_prompt: str | None


BASE_STYLE = StyleTemplate(
    style_id=BASE_STYLE_ID,
    name="Base (No Style)",
    positive_prompt=PROMPT_PLACEHOLDER,
)

BUILTIN_STYLES: tuple[StyleTemplate, ...] = (
    BASE_STYLE,
    StyleTemplate(
        style_id="cinematic",
        name="Cinematic",
        positive_prompt=(
            "cinematic still of {prompt}, shallow depth of field, film grain, "
            "highly detailed, dramatic lighting"
        ),
        negative_prompt="anime, cartoon, graphic, text, painting, sketch, blurry",
    ),
    StyleTemplate(
        style_id="anime",
        name="Anime",
        positive_prompt="anime artwork of {prompt}, key visual, vibrant, studio anime",
        negative_prompt="photo, deformed, black and white, realism, disfigured",
    ),
    StyleTemplate(
        style_id="watercolor",
        name="Watercolor",
        positive_prompt="watercolor painting of {prompt}, soft edges, paper texture",
        negative_prompt="photo, 3d render, harsh lines",
    ),
    StyleTemplate(
        style_id="ghibli",
        name="Ghibli Style",
        positive_prompt="{prompt}, studio ghibli style, cel shaded",
        negative_prompt="3d render, realistic",
    ),
)


class StyleCatalog:
    """Resolves style ids to templates; unknown ids fall back to a passthrough template."""

    def __init__(self, styles: tuple[StyleTemplate, ...] | list[StyleTemplate] = ()) -> None:
        self._styles: dict[str, StyleTemplate] = {
            style.style_id: style for style in BUILTIN_STYLES
        }
        for style in styles:
            self._styles[style.style_id] = style

    @classmethod
    def from_path(cls, path: Path | None) -> StyleCatalog:
        """Build a catalog from built-ins plus an optional JSON style list.

        The file holds a list of ``{"name", "prompt", "negative_prompt"}``
        objects; ids are derived from names. Entries without a ``{prompt}``
        placeholder are skipped.
        """

        if path is None:
            return cls()
        raw = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(raw, list):
            raise ValueError(f"Style file must contain a JSON list: {path}")

        styles: list[StyleTemplate] = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            name = str(item.get("name", "")).strip()
            prompt = str(item.get("prompt", ""))
            if not name or PROMPT_PLACEHOLDER not in prompt:
                logger.warning("Skipping style without name or placeholder: %r", item)
                continue
            styles.append(
                StyleTemplate(
                    style_id=style_id_from_name(name),
                    name=name,
                    positive_prompt=prompt,
                    negative_prompt=str(item.get("negative_prompt") or ""),
                ),
            )
        return cls(styles)

    def get(self, style_id: str) -> StyleTemplate:
        style = self._styles.get(style_id)
        if style is not None:
            return style
        logger.warning("Unknown style %r, using passthrough template", style_id)
        return StyleTemplate(style_id=style_id, name=style_id, positive_prompt=PROMPT_PLACEHOLDER)

    def style_ids(self) -> list[str]:
        return list(self._styles)


def merge_prompt(
    text: str,
    style: StyleTemplate,
    *,
    extra_negative_prompt: str | None = None,
) -> MergedPrompt:
    """Substitute ``text`` into the first placeholder and join negative prompts."""

    final_prompt = style.positive_prompt.replace(PROMPT_PLACEHOLDER, text, 1)
    negatives = [
        part.strip()
        for part in (style.negative_prompt, extra_negative_prompt or "")
        if part and part.strip()
    ]
    return MergedPrompt(
        final_prompt=final_prompt,
        negative_prompt=", ".join(negatives) or None,
    )


def style_id_from_name(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
