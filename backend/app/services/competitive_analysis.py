from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass

from app.core.config import settings
from app.services import ml_api_client
from app.services.competitive_monitoring import (
    CompetitorSearchFailed,
    MonitoringError,
    as_float,
    as_int,
    search_query_from_title,
)
from app.services.llm_service import LLMService, LLMUnavailable, llm_service
from app.services.ml_api_client import MLAPIError
from app.services.prompts import (
    STRUCTURED_ANALYSIS_SYSTEM_PROMPT,
    AnalysisCompetitorLine,
    StructuredAnalysisPrompt,
)

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class NoComparableListings(MonitoringError):
    code = "no_comparable_listings"
    status_code = 404


@dataclass(frozen=True)
class Recommendations:
    price: str
    title: str
    shipping: str
    general: str


@dataclass(frozen=True)
class StructuredAnalysis:
    summary: str
    strengths: list[str]
    weaknesses: list[str]
    recommendations: Recommendations
    competitiveness_score: str

    def to_dict(self) -> dict:
        return asdict(self)


FALLBACK_ANALYSIS = StructuredAnalysis(
    summary="Análise competitiva realizada com base nos dados fornecidos.",
    strengths=["Produto posicionado no mercado"],
    weaknesses=["Necessário ajustar estratégia"],
    recommendations=Recommendations(
        price="Revisar estratégia de preços",
        title="Otimizar título do produto",
        shipping="Considerar frete grátis",
        general="Monitorar concorrentes regularmente",
    ),
    competitiveness_score="6",
)


@dataclass(frozen=True)
class AnalysisParseResult:
    """Either a parsed analysis or the fallback plus the reason parsing failed."""

    value: StructuredAnalysis
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ProductDescription:
    title: str
    price: float
    sales: int = 0
    shipping: str = ""
    delivery_time: str = ""


def _str_list(value: object) -> list[str] | None:
    if not isinstance(value, list):
        return None
    return [str(x) for x in value if str(x).strip()]


def parse_structured_analysis(raw: str | None) -> AnalysisParseResult:
    text = (raw or "").strip()
    fenced = _CODE_FENCE.match(text)
    if fenced:
        text = fenced.group(1).strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        return AnalysisParseResult(FALLBACK_ANALYSIS, error=f"invalid JSON: {exc.msg}")

    if not isinstance(data, dict):
        return AnalysisParseResult(FALLBACK_ANALYSIS, error="analysis is not a JSON object")

    summary = data.get("resumo")
    strengths = _str_list(data.get("pontos_fortes"))
    weaknesses = _str_list(data.get("pontos_fracos"))
    recs = data.get("recomendacoes")
    score = data.get("score_competitividade")

    if not isinstance(summary, str) or strengths is None or weaknesses is None or not isinstance(recs, dict):
        return AnalysisParseResult(FALLBACK_ANALYSIS, error="analysis JSON missing required fields")
    if score is None:
        return AnalysisParseResult(FALLBACK_ANALYSIS, error="analysis JSON missing competitiveness score")

    fallback_recs = FALLBACK_ANALYSIS.recommendations
    return AnalysisParseResult(
        StructuredAnalysis(
            summary=summary.strip(),
            strengths=strengths,
            weaknesses=weaknesses,
            recommendations=Recommendations(
                price=str(recs.get("preco") or fallback_recs.price),
                title=str(recs.get("titulo") or fallback_recs.title),
                shipping=str(recs.get("frete") or fallback_recs.shipping),
                general=str(recs.get("geral") or fallback_recs.general),
            ),
            competitiveness_score=str(score),
        )
    )


def _comparable_listings(results: list[dict], *, own_title: str, limit: int = 3) -> list[dict]:
    picked: list[dict] = []
    for item in results:
        if len(picked) >= limit:
            break

        title = str(item.get("title") or "")
        price = as_float(item.get("price"))

        if price <= 0 or len(title) <= 10 or title == own_title:
            continue

        shipping = item.get("shipping")
        free = isinstance(shipping, dict) and bool(shipping.get("free_shipping"))
        picked.append(
            {
                "title": title,
                "price": price,
                "sales": as_int(item.get("sold_quantity")),
                "shipping": "Frete grátis" if free else "Frete pago",
                "delivery_time": "Não informado",
                "permalink": item.get("permalink"),
            }
        )
    return picked


async def run_structured_analysis(product: ProductDescription, llm: LLMService | None = None) -> dict:
    query = search_query_from_title(product.title, settings.analysis_query_tokens)
    logger.info("Structured competitive analysis for %r (query=%r)", product.title, query)

    try:
        results = await ml_api_client.search_items(query=query, limit=settings.analysis_search_limit)
    except MLAPIError as exc:
        raise CompetitorSearchFailed("unable to search competing listings") from exc

    if not results:
        raise NoComparableListings("no similar listings found")

    competitors = _comparable_listings(results, own_title=product.title)

    prompt = StructuredAnalysisPrompt(
        title=product.title,
        price=product.price,
        sales=product.sales,
        shipping=product.shipping,
        delivery_time=product.delivery_time,
        competitors=[
            AnalysisCompetitorLine(
                title=c["title"],
                price=c["price"],
                sales=c["sales"],
                shipping=c["shipping"],
                delivery_time=c["delivery_time"],
            )
            for c in competitors
        ],
    )

    try:
        raw = await (llm or llm_service).complete(
            prompt.to_prompt(),
            STRUCTURED_ANALYSIS_SYSTEM_PROMPT.format(locale=settings.llm_locale),
        )
        parsed = parse_structured_analysis(raw)
    except LLMUnavailable as exc:
        parsed = AnalysisParseResult(FALLBACK_ANALYSIS, error=f"llm unavailable: {exc}")

    if not parsed.ok:
        logger.warning("Structured analysis fell back to default: %s", parsed.error)

    return {
        "user_product": {
            "title": product.title,
            "price": product.price,
            "sales": product.sales,
            "shipping": product.shipping,
            "delivery_time": product.delivery_time,
        },
        "competitors": competitors,
        "analysis": parsed.value.to_dict(),
        "used_fallback": not parsed.ok,
    }
