"""
Prompt templates for the three vision-model steps.

Projects may override any step with a row in ``prompt_templates``; otherwise
the built-in default is used. Placeholders are ``{{name}}`` and are filled by
``render``. Unknown placeholders are left in place.
"""
import logging
import re
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger("shelfmatch-prompts")

STEP_VISUAL_COMPARE = "visual_compare"
STEP_VISUAL_MATCH = "visual_match"
STEP_CONTEXTUAL = "contextual"

DEFAULT_VISUAL_COMPARE_PROMPT = """You are comparing two retail product images.
Image 1 is a product cropped from a store shelf photo.
Image 2 is a product image from a catalog.

Classify the pair into exactly one status:
- "identical": same brand, product, flavor, size and packaging.
- "almost_same": same brand, product, flavor and package type; the size is
  plausibly the same; only claim text, minor colors or a regional packaging
  refresh differ.
- "not_match": brand, flavor, product line, or a materially different size differs.

Also rate raw visual resemblance from 0.0 to 1.0 as visualSimilarity. This is
independent of the status: two variants of the same brand can look different.

Return ONLY JSON:
{"matchStatus": "identical" | "almost_same" | "not_match",
 "confidence": 0.0-1.0,
 "visualSimilarity": 0.0-1.0,
 "reason": "short explanation"}
"""

DEFAULT_VISUAL_MATCH_PROMPT = """You are selecting the catalog product that matches a shelf product.

SHELF PRODUCT (Image 1), extracted attributes:
- Brand: {{brand}}
- Product Name: {{productName}}
- Size: {{size}}
- Flavor: {{flavor}}
- Category: {{category}}

CANDIDATES ({{candidateCount}} options), shown as Images 2-{{candidateImageCount}} in order:
{{candidateDescriptions}}

Compare logos, graphics, colors and label details. Choose the single best
candidate, or null when none can be chosen with reasonable certainty.

Return ONLY JSON:
{"selectedKey": "<candidate key>" | null,
 "confidence": 0.0-1.0,
 "reasoning": "short explanation",
 "perCandidate": [{"key": "<candidate key>", "visualSimilarity": 0.0-1.0, "passedThreshold": true | false}]}
"""

DEFAULT_CONTEXTUAL_PROMPT = """The image shows a section of a store shelf. The product in the
MIDDLE of the image is the target; its neighbors on the same shelf row are
visible to the left and right.

Current extraction for the target:
- Brand: {{brand}} (confidence {{brandConfidence}})
- Size: {{size}} (confidence {{sizeConfidence}})

Neighbors (left to right as listed):
{{neighborSummary}}

Products of the same brand are usually faced together. Use the neighbors and
any visible detail to infer the target's brand and size.

Return ONLY JSON:
{"inferredBrand": "...", "brandConfidence": 0.0-1.0, "brandReasoning": "...",
 "inferredSize": "...", "sizeConfidence": 0.0-1.0, "sizeReasoning": "...",
 "overallConfidence": 0.0-1.0, "notes": "..."}
"""

DEFAULT_PROMPTS: dict[str, str] = {
    STEP_VISUAL_COMPARE: DEFAULT_VISUAL_COMPARE_PROMPT,
    STEP_VISUAL_MATCH: DEFAULT_VISUAL_MATCH_PROMPT,
    STEP_CONTEXTUAL: DEFAULT_CONTEXTUAL_PROMPT,
}

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")


def render(template: str, **values) -> str:
    """Substitute ``{{name}}`` placeholders; None renders as "Unknown"."""
    def _sub(match: re.Match) -> str:
        name = match.group(1)
        if name not in values:
            return match.group(0)
        value = values[name]
        return "Unknown" if value is None else str(value)

    return _PLACEHOLDER_RE.sub(_sub, template)


class PromptLibrary:
    """Per-project prompt lookup with built-in defaults."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    async def get(self, project_id: Optional[str], step: str) -> str:
        if step not in DEFAULT_PROMPTS:
            raise ValueError(f"Unknown prompt step: {step}")
        if not project_id or self._session_factory is None:
            return DEFAULT_PROMPTS[step]

        from shelfmatch.models.orm_models import PromptTemplateRow

        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(PromptTemplateRow.prompt_text)
                    .where(
                        PromptTemplateRow.project_id == project_id,
                        PromptTemplateRow.step_name == step,
                        PromptTemplateRow.is_active.is_(True),
                    )
                    .order_by(PromptTemplateRow.version.desc())
                    .limit(1)
                )
                custom = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.warning(f"Prompt lookup failed for project {project_id}/{step}: {e}")
            return DEFAULT_PROMPTS[step]

        if custom:
            logger.debug(f"Using custom {step} prompt for project {project_id}")
            return custom
        return DEFAULT_PROMPTS[step]
