"""
ECO risk scoring on top of the LLM gateway.

``ECORiskScorer.analyze`` builds the assessment prompt from an ECO summary,
sends it through the gateway, and turns the reply into a clamped
RiskResult.  It raises instead of inventing a default score:

    ServiceUnavailableError  no provider answered (from the gateway)
    RiskScoringError         a provider answered with something unusable
"""

import json
import logging
import math
import re
from dataclasses import dataclass, field, replace

from ecoflow.ai.gateway import LLMGateway

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

_MAX_LIST_ITEMS = 5

SYSTEM_PROMPT = (
    "You are an expert manufacturing and engineering change analyst. "
    "You assess Engineering Change Orders for delivery and quality risk "
    "and answer with a single JSON object."
)

PROMPT_TEMPLATE = """Analyze the following Engineering Change Order (ECO) and provide a risk assessment.

ECO Details:
- Title: {title}
- Description: {description}
- Change Type: {change_type}
- Priority: {priority}
- Product: {product}
- Proposed Changes: {proposed_changes}

Respond with a JSON object containing:
{{
    "riskScore": <number 1-10, where 10 is highest risk>,
    "predictedDelay": <estimated days of potential delay>,
    "keyRisks": [<3-5 key risk factors>],
    "recommendations": [<3-5 actionable recommendations>],
    "impactAreas": [<affected areas: "Production", "Quality", "Cost", "Supply Chain", "Compliance", ...>],
    "overallAssessment": "<2-3 sentence summary>"
}}

Consider manufacturing complexity, supply chain impact, quality implications,
timeline feasibility, resource requirements and regulatory compliance.

Respond ONLY with the JSON object, no additional text."""


class RiskScoringError(Exception):
    """The scorer answered, but the answer could not be used."""


@dataclass(frozen=True)
class RiskResult:
    risk_score: float
    predicted_delay: int
    key_risks: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    impact_areas: list[str] = field(default_factory=list)
    overall_assessment: str = ""
    provider: str | None = None

    def as_enrichment(self) -> dict:
        """Fields folded into the change order."""
        return {
            "risk_score": self.risk_score,
            "predicted_delay": self.predicted_delay,
            "key_risks": list(self.key_risks),
        }


def build_risk_prompt(summary: dict) -> str:
    product = summary.get("product")
    if product:
        product_info = (
            f"{product.get('name')} ({product.get('sku')}) - "
            f"Category: {product.get('category') or 'n/a'}"
        )
    else:
        product_info = "Not specified"

    return PROMPT_TEMPLATE.format(
        title=summary.get("title") or "",
        description=summary.get("description") or "",
        change_type=summary.get("change_type") or "",
        priority=summary.get("priority") or "",
        product=product_info,
        proposed_changes=json.dumps(summary.get("proposed_changes") or [], indent=2, default=str),
    )


def _number(value, default):
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def _str_list(value, limit=None):
    if not isinstance(value, list):
        return []
    items = [str(v) for v in value if v is not None]
    return items[:limit] if limit else items


def parse_risk_response(text: str) -> RiskResult:
    """Extract the JSON object from *text* and clamp it into range."""
    match = _JSON_OBJECT.search(text or "")
    if not match:
        raise RiskScoringError("Invalid AI response format: no JSON object found")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise RiskScoringError(f"Invalid AI response format: {e}") from e
    if not isinstance(data, dict):
        raise RiskScoringError("Invalid AI response format: expected an object")

    score = _number(data.get("riskScore"), 5.0) or 5.0
    delay = _number(data.get("predictedDelay"), 0.0)

    return RiskResult(
        risk_score=max(1.0, min(10.0, score)),
        predicted_delay=max(0, int(delay)),
        key_risks=_str_list(data.get("keyRisks"), _MAX_LIST_ITEMS),
        recommendations=_str_list(data.get("recommendations"), _MAX_LIST_ITEMS),
        impact_areas=_str_list(data.get("impactAreas")),
        overall_assessment=str(data.get("overallAssessment") or "Analysis completed."),
    )


class ECORiskScorer:
    def __init__(self, gateway: LLMGateway) -> None:
        self.gateway = gateway

    def analyze(self, summary: dict) -> RiskResult:
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_risk_prompt(summary)},
        ]
        reply = self.gateway.chat(messages, purpose="eco_risk")
        result = parse_risk_response(reply.get("content", ""))
        logger.info(
            "ECO risk scored %.1f via %s", result.risk_score, reply.get("provider"),
            extra={"eco_id": summary.get("id")},
        )
        return replace(result, provider=reply.get("provider"))
