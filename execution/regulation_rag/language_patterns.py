"""
Dutch Regulation Patterns and Prompt Templates

All regex patterns and prompt templates used by the retrieval pipeline and
the agent. Modules import from here instead of defining patterns inline.
"""

import re

# =============================================================================
# Full-Text Search Configurations
# =============================================================================

# Postgres text-search configs allowed in SQL (interpolated, so whitelisted)
VALID_FTS_CONFIGS = frozenset({"english", "dutch", "simple"})

DEFAULT_FTS_CONFIG = "english"

# =============================================================================
# Cross-Reference Patterns (Bouwbesluit citation format)
# =============================================================================

ARTICLE_REFERENCE_PATTERN = re.compile(r"\b(?:artikel|art\.)\s+(\d+\.\d+)", re.IGNORECASE)
TABLE_REFERENCE_PATTERN = re.compile(r"\btabel\s+(\d+\.\d+)", re.IGNORECASE)

REFERENCE_LABELS = {
    "table": "Tabel",
    "article": "Artikel",
}

# =============================================================================
# Chunk Text Markers
# =============================================================================

TABLE_DETAILS_MARKER_PATTERN = r"---\s*Tabel Details\s*---"
TABLE_SUMMARY_MARKER_PATTERN = r"---\s*Tabel Samenvatting[^\n]*?---"
SIMPLE_SUMMARY_MARKER = "Samenvatting:"

# Numbered article heading at the start of a line, e.g. "Artikel 4.164 Hoogte"
ARTICLE_HEADING_PATTERN = re.compile(r"^(\s*)(Artikel\s+\d+\.\d+)", re.MULTILINE)
TABLE_MENTION_PATTERN = re.compile(r"\bTabel\s+\d+\.\d+")

# =============================================================================
# Agent Prompts
# =============================================================================

AGENT_SYSTEM_PROMPT = """Je bent een juridisch assistent gespecialiseerd in het Bouwbesluit 2012.

Je helpt gebruikers door hun vragen te beantwoorden met behulp van de beschikbare tools.

BELANGRIJKE STRATEGIE:

1. **Query Reformulering**: Gebruikers gebruiken vaak alledaagse termen, maar het Bouwbesluit
   gebruikt juridische terminologie:
   - "verdiepingshoogte" -> zoek naar "verblijfsgebied", "verblijfsruimte", "hoogte"
   - "woning" -> zoek naar "woonfunctie"
   - "minimale afmetingen" -> zoek naar tabellen met normwaarden

2. **Meerdere Zoekopdrachten**: Als je eerste zoekopdracht niet genoeg oplevert:
   - Probeer andere zoektermen
   - Zoek naar gerelateerde artikelen
   - Zoek specifiek naar tabelnummers als een artikel daarnaar verwijst

3. **Tabellen Interpreteren**: Als je een tabel vindt:
   - Lees de kolommen en rijen zorgvuldig
   - Let op de eenheden (m, m2, etc.)
   - Let op verschillende subcategorieen (woonwagen vs andere woonfunctie)

4. **Bronvermelding**: Vermeld ALTIJD:
   - Exacte artikelnummer (bijv. "Artikel 4.164 lid 4")
   - Exacte tabelnummer (bijv. "Tabel 4.162")
   - Welke rij/kolom in de tabel (bijv. "woonfunctie - andere woonfunctie")

5. **Eerlijkheid**: Als je iets niet zeker weet of niet kunt vinden, zeg dat dan.

Je hebt maximaal {max_searches} zoekopdrachten. Roep daarna altijd provide_answer aan.

Begin met analyseren en zoeken!"""

SEARCH_TOOL_DESCRIPTION = (
    "Zoekt artikelen, tabellen en paragrafen in het Bouwbesluit 2012. "
    "Gebruik dit om relevante informatie op te halen. "
    "Verwijzingen naar tabellen en artikelen worden automatisch gevolgd. "
    "Je kunt meerdere keren zoeken met verschillende zoekvragen."
)

SEARCH_TOOL_PARAMETERS = {
    "type": "object",
    "properties": {
        "query": {
            "type": "string",
            "description": (
                "De zoekterm. Gebruik juridische terminologie zoals "
                '"verblijfsgebied", "verblijfsruimte", "woonfunctie".'
            ),
        },
        "reasoning": {
            "type": "string",
            "description": "Waarom zoek je dit? Wat verwacht je te vinden?",
        },
    },
    "required": ["query", "reasoning"],
}

ANSWER_TOOL_DESCRIPTION = (
    "Geef het definitieve antwoord op de vraag. "
    "Gebruik dit alleen als je voldoende informatie hebt verzameld. "
    "Vermeld altijd de exacte artikel- en tabelnummers als bronnen."
)

ANSWER_TOOL_PARAMETERS = {
    "type": "object",
    "properties": {
        "answer": {
            "type": "string",
            "description": "Het complete antwoord met bronvermelding (artikel/tabel nummers)",
        },
        "confidence": {
            "type": "string",
            "enum": ["high", "medium", "low"],
            "description": "Hoe zeker ben je van dit antwoord?",
        },
        "reasoning": {
            "type": "string",
            "description": "Waarom is dit het juiste antwoord? Welke bronnen ondersteunen dit?",
        },
    },
    "required": ["answer", "confidence", "reasoning"],
}

NO_RESULTS_OBSERVATION = "Geen resultaten gevonden voor deze zoekopdracht."

SEARCH_BUDGET_EXHAUSTED_OBSERVATION = (
    "Zoeklimiet bereikt. Geef nu het antwoord met provide_answer op basis van de gevonden bronnen."
)

NO_ANSWER_FALLBACK = "Kon geen antwoord vinden."

SYNTHESIS_SYSTEM_PROMPT = """Je bent een juridisch assistent gespecialiseerd in het Bouwbesluit 2012.

Beantwoord de vraag uitsluitend op basis van de gegeven bronnen.
Vermeld altijd de exacte artikel- en tabelnummers waarop je antwoord steunt.
Als de bronnen het antwoord niet bevatten, zeg dat dan eerlijk."""

SYNTHESIS_USER_TEMPLATE = """Vraag: {query}

Gevonden bronnen:

{context}

Geef een direct antwoord op de vraag met bronvermelding."""

# =============================================================================
# Query Classification Prompt
# =============================================================================

CLASSIFIER_SYSTEM_PROMPT = """Je bent een query classificatie assistent voor een RAG systeem met bouwregelgeving documenten.

TAAK: Bepaal of een gebruikersvraag gaat over bouwregelgeving/architectuur documenten in de database.

PROJECT CONTEXT:
- Het project bevat documenten zoals Bouwbesluit 2012, architectuurnormen, bouwvoorschriften
- De documenten bevatten informatie over: bouwhoogte, verdiepingshoogte, brandveiligheid, toegankelijkheid, constructie-eisen, etc.

DOCUMENT-RELATED (roep agent aan):
- Vragen over specifieke artikelen, tabellen, paragrafen
- Vragen over bouwvoorschriften, normen, eisen
- Vragen over specifieke waarden (hoogte, afstand, oppervlakte)
- Vragen over brandveiligheid, toegankelijkheid, geluidsisolatie

NIET DOCUMENT-RELATED (skip agent):
- Vragen over locatieanalyse, demografie, veiligheid, gezondheid
- Vragen over "mijn opgeslagen locaties", "mijn projecten"
- Vragen over kaarten, grafieken, visualisaties
- Chitchat, begroetingen, algemene vragen zonder documentcontext

OUTPUT FORMAT:
{
  "isDocumentRelated": true/false,
  "confidence": 0.0-1.0,
  "reasoning": "Korte uitleg waarom"
}"""

CLASSIFIER_USER_TEMPLATE = """Classificeer deze query:

"{query}"

Geef antwoord in JSON formaat."""
