"""Prompt templates for competitive analysis (pt-BR marketplace)."""

from __future__ import annotations

from pydantic import BaseModel

MONITORING_SYSTEM_PROMPT = (
    "Você é um especialista em e-commerce do Mercado Livre que fornece análises "
    "competitivas precisas e acionáveis. Responda de forma direta e prática, em {locale}."
)

STRUCTURED_ANALYSIS_SYSTEM_PROMPT = (
    "Você é um especialista em análise competitiva para e-commerce. "
    "Sempre responda em JSON válido e em {locale}."
)

NO_SUGGESTION_FALLBACK = "Não foi possível gerar sugestões no momento."


def _yes_no(value: bool) -> str:
    return "Sim" if value else "Não"


def _brl(value: float) -> str:
    return f"R$ {float(value):.2f}"


class CompetitorLine(BaseModel):
    title: str
    price: float
    sold_quantity: int = 0
    shipping_free: bool = False


class MonitoringPrompt(BaseModel):
    """Owner listing plus the bounded competitor set."""

    title: str
    price: float
    sold_quantity: int
    shipping_free: bool
    competitors: list[CompetitorLine] = []

    def to_prompt(self) -> str:
        parts = [
            "Como especialista em e-commerce do Mercado Livre, analise a posição competitiva deste produto:",
            "",
            "PRODUTO DO USUÁRIO:",
            f"- Título: {self.title}",
            f"- Preço: {_brl(self.price)}",
            f"- Vendas: {self.sold_quantity}",
            f"- Frete grátis: {_yes_no(self.shipping_free)}",
            "",
            "CONCORRENTES:",
        ]

        if not self.competitors:
            parts.append("Nenhum concorrente encontrado na busca.")
        for index, comp in enumerate(self.competitors, start=1):
            parts.extend(
                [
                    f"{index}. {comp.title}",
                    f"   - Preço: {_brl(comp.price)}",
                    f"   - Vendas: {comp.sold_quantity}",
                    f"   - Frete grátis: {_yes_no(comp.shipping_free)}",
                ]
            )

        parts.extend(
            [
                "",
                "Forneça sugestões específicas para:",
                "1. Preço competitivo recomendado",
                "2. Melhorias no título do produto",
                "3. Estratégias de frete e entrega",
                "4. Pontos fortes a destacar",
                "",
                "Seja direto e prático nas recomendações.",
            ]
        )
        return "\n".join(parts)


class AnalysisCompetitorLine(BaseModel):
    title: str
    price: float
    sales: int = 0
    shipping: str
    delivery_time: str


class StructuredAnalysisPrompt(BaseModel):
    title: str
    price: float
    sales: int
    shipping: str
    delivery_time: str
    competitors: list[AnalysisCompetitorLine] = []

    def to_prompt(self) -> str:
        parts = [
            "Você é um especialista em e-commerce e análise competitiva do Mercado Livre.",
            "",
            "Analise o seguinte produto do vendedor comparado com seus concorrentes:",
            "",
            "**PRODUTO DO VENDEDOR:**",
            f"- Título: {self.title}",
            f"- Preço: {_brl(self.price)}",
            f"- Vendas: {self.sales}",
            f"- Frete: {self.shipping}",
            f"- Prazo de entrega: {self.delivery_time}",
            "",
            "**CONCORRENTES:**",
        ]
        for index, comp in enumerate(self.competitors, start=1):
            parts.extend(
                [
                    f"{index}. {comp.title}",
                    f"   - Preço: {_brl(comp.price)}",
                    f"   - Vendas: {comp.sales}",
                    f"   - Frete: {comp.shipping}",
                    f"   - Prazo: {comp.delivery_time}",
                ]
            )

        parts.extend(
            [
                "",
                "Forneça uma análise detalhada em formato JSON com as seguintes seções:",
                "{",
                '  "resumo": "Resumo executivo da posição competitiva em 2-3 frases",',
                '  "pontos_fortes": ["lista de pontos fortes do produto analisado"],',
                '  "pontos_fracos": ["lista de pontos fracos identificados"],',
                '  "recomendacoes": {',
                '    "preco": "sugestão específica sobre preço",',
                '    "titulo": "sugestão para melhorar o título",',
                '    "frete": "sugestão sobre estratégia de frete",',
                '    "geral": "outras recomendações importantes"',
                "  },",
                '  "score_competitividade": "número de 1-10 indicando quão competitivo está o produto"',
                "}",
                "",
                "Responda APENAS o JSON, sem texto adicional.",
            ]
        )
        return "\n".join(parts)
