from __future__ import annotations

import asyncio
import json
import unittest
from unittest.mock import AsyncMock, patch

from app.services import ml_api_client
from app.services.competitive_analysis import (
    FALLBACK_ANALYSIS,
    NoComparableListings,
    ProductDescription,
    parse_structured_analysis,
    run_structured_analysis,
)
from app.services.competitive_monitoring import CompetitorSearchFailed
from app.services.llm_service import LLMUnavailable
from app.services.ml_api_client import MLAPIError

VALID_ANALYSIS = {
    "resumo": "Produto com preço acima da média.",
    "pontos_fortes": ["Frete grátis", "Boa reputação"],
    "pontos_fracos": ["Preço alto"],
    "recomendacoes": {
        "preco": "Reduzir para R$ 89,90",
        "titulo": "Incluir a marca no início",
        "frete": "Manter frete grátis",
        "geral": "Adicionar mais fotos",
    },
    "score_competitividade": 7,
}


class _FakeLLM:
    def __init__(self, text: str = "", exc: Exception | None = None) -> None:
        self.text = text
        self.exc = exc
        self.calls = 0

    async def complete(self, prompt: str, system_prompt: str = "", **kwargs) -> str:
        self.calls += 1
        if self.exc is not None:
            raise self.exc
        return self.text


class StructuredAnalysisParserTests(unittest.TestCase):
    def test_parses_portuguese_keys(self) -> None:
        result = parse_structured_analysis(json.dumps(VALID_ANALYSIS))

        self.assertTrue(result.ok)
        self.assertEqual(result.value.summary, "Produto com preço acima da média.")
        self.assertEqual(result.value.strengths, ["Frete grátis", "Boa reputação"])
        self.assertEqual(result.value.weaknesses, ["Preço alto"])
        self.assertEqual(result.value.recommendations.price, "Reduzir para R$ 89,90")
        self.assertEqual(result.value.recommendations.shipping, "Manter frete grátis")
        self.assertEqual(result.value.competitiveness_score, "7")

    def test_accepts_json_wrapped_in_code_fence(self) -> None:
        raw = "```json\n" + json.dumps(VALID_ANALYSIS) + "\n```"

        result = parse_structured_analysis(raw)

        self.assertTrue(result.ok)
        self.assertEqual(result.value.recommendations.general, "Adicionar mais fotos")

    def test_invalid_json_yields_fallback_with_reason(self) -> None:
        result = parse_structured_analysis("Aqui está a análise: preço bom.")

        self.assertFalse(result.ok)
        self.assertIs(result.value, FALLBACK_ANALYSIS)
        self.assertIn("invalid JSON", result.error)

    def test_missing_fields_yield_fallback(self) -> None:
        partial = {k: v for k, v in VALID_ANALYSIS.items() if k != "pontos_fracos"}

        result = parse_structured_analysis(json.dumps(partial))

        self.assertFalse(result.ok)
        self.assertEqual(result.value, FALLBACK_ANALYSIS)

    def test_non_object_json_yields_fallback(self) -> None:
        self.assertFalse(parse_structured_analysis("[1, 2, 3]").ok)
        self.assertFalse(parse_structured_analysis(None).ok)

    def test_missing_recommendation_entries_use_defaults(self) -> None:
        data = dict(VALID_ANALYSIS, recomendacoes={"preco": "Baixar 10%"})

        result = parse_structured_analysis(json.dumps(data))

        self.assertTrue(result.ok)
        self.assertEqual(result.value.recommendations.price, "Baixar 10%")
        self.assertEqual(result.value.recommendations.title, FALLBACK_ANALYSIS.recommendations.title)


class StructuredAnalysisRunTests(unittest.TestCase):
    def setUp(self) -> None:
        self.product = ProductDescription(
            title="Fone Bluetooth JBL Tune 510BT Preto",
            price=249.9,
            sales=40,
            shipping="Frete grátis",
            delivery_time="2 dias",
        )
        self.results = [
            {"id": "MLB1", "title": "Fone JBL Tune 510BT Azul Original", "price": 229.0, "sold_quantity": 500,
             "shipping": {"free_shipping": True}},
            {"id": "MLB2", "title": "Fone JBL", "price": 199.0},
            {"id": "MLB3", "title": "Fone JBL Tune 510BT Branco Lacrado", "price": 0},
            {"id": "MLB4", "title": "Fone Bluetooth JBL Tune 510BT Preto", "price": 249.9},
            {"id": "MLB5", "title": "Headphone JBL Tune 510 Wireless", "price": 239.0, "sold_quantity": 80},
        ]
        self.search = AsyncMock(side_effect=lambda query, limit: list(self.results))
        self._patch = patch.object(ml_api_client, "search_items", new=self.search)
        self._patch.start()

    def tearDown(self) -> None:
        self._patch.stop()

    def test_uses_first_three_tokens_and_filters_comparables(self) -> None:
        result = asyncio.run(run_structured_analysis(self.product, llm=_FakeLLM(json.dumps(VALID_ANALYSIS))))

        self.search.assert_awaited_once_with(query="Fone Bluetooth JBL", limit=10)
        self.assertEqual(
            [c["title"] for c in result["competitors"]],
            ["Fone JBL Tune 510BT Azul Original", "Headphone JBL Tune 510 Wireless"],
        )
        self.assertEqual(result["competitors"][0]["shipping"], "Frete grátis")
        self.assertEqual(result["competitors"][1]["shipping"], "Frete pago")
        self.assertFalse(result["used_fallback"])
        self.assertEqual(result["analysis"]["competitiveness_score"], "7")
        self.assertEqual(result["user_product"]["title"], self.product.title)

    def test_tolerates_malformed_marketplace_counters(self) -> None:
        self.results = [
            {"id": "MLB6", "title": "Fone JBL Tune 510BT Rosa Original", "price": "219.90", "sold_quantity": "12.0"},
            {"id": "MLB7", "title": "Fone JBL Tune 520BT Preto Novo", "price": 259.0, "sold_quantity": "n/a"},
            {"id": "MLB8", "title": "Fone JBL Tune 510BT Verde Lacrado", "price": "sob consulta"},
        ]

        result = asyncio.run(run_structured_analysis(self.product, llm=_FakeLLM(json.dumps(VALID_ANALYSIS))))

        self.assertEqual([c["sales"] for c in result["competitors"]], [12, 0])
        self.assertEqual(result["competitors"][0]["price"], 219.9)

    def test_llm_failure_returns_fallback_analysis(self) -> None:
        result = asyncio.run(run_structured_analysis(self.product, llm=_FakeLLM(exc=LLMUnavailable("down"))))

        self.assertTrue(result["used_fallback"])
        self.assertEqual(result["analysis"], FALLBACK_ANALYSIS.to_dict())

    def test_no_search_results_raises(self) -> None:
        self.results = []
        llm = _FakeLLM(json.dumps(VALID_ANALYSIS))

        with self.assertRaises(NoComparableListings):
            asyncio.run(run_structured_analysis(self.product, llm=llm))

        self.assertEqual(llm.calls, 0)

    def test_search_failure_raises(self) -> None:
        self.search.side_effect = MLAPIError("search failed", status_code=503)

        with self.assertRaises(CompetitorSearchFailed):
            asyncio.run(run_structured_analysis(self.product, llm=_FakeLLM()))


if __name__ == "__main__":
    unittest.main()
