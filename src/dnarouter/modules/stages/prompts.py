"""Prompt templates for the inference-backed stages.

Built-in templates can be overridden per deployment by a JSON document in
the object store (``prompt-templates/prompts.json`` by default) mapping a
template name to its user-message text. Placeholders use ``{{name}}``.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from dnarouter.core.exceptions import InvalidInput
from dnarouter.modules.models import Prompt
from dnarouter.modules.providers.storage import ObjectStore

logger = logging.getLogger(__name__)

CATEGORIZE = "categorize-user-data"
PROFILE_METRICS = "user-profile-metrics"
PERSONA = "persona-builder"

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")

SYSTEM_MESSAGES: dict[str, str] = {
    CATEGORIZE: (
        "You are a data analyst specialized in categorizing and extracting insights from "
        "personal data exports. Extract structured information from files."
    ),
    PROFILE_METRICS: (
        "You are a data analyst that extracts factual, quantitative metrics from personal "
        "data exports. Respond with a single JSON object."
    ),
    PERSONA: (
        "You maintain audience personas built from a user's personal data. "
        "Respond with a single JSON object."
    ),
}

TEMPERATURES: dict[str, float] = {CATEGORIZE: 0.2, PROFILE_METRICS: 0.1, PERSONA: 0.3}

DEFAULT_TEMPLATES: dict[str, str] = {
    CATEGORIZE: """
Analyze the following data export and extract useful information. Extract specific financial numbers and metrics.
File: {{fileName}}

Tasks:
1. Create a DETAILED file summary with category information
2. Extract FACTUAL facts found in the data, not inferences

CATEGORIES:
- financial: financial transactions, banking information, purchases, subscriptions
- social: social connections, friends, followers, social interactions
- professional: work history, skills, education, professional connections
- entertainment: media consumption, content preferences, games, music, videos
Also identify any other relevant categories like:
- health: medical records, fitness data, health metrics
- travel: location history, trips, travel preferences
- shopping: purchase history, product preferences
- communication: emails, messages, contacts

Output JSON format:
{
  "fileName": "file name",
  "fileType": "export type (e.g. facebook, bank statement)",
  "summary": "detailed 3-5 sentence summary",
  "categories": {
    "categoryName": {
      "relevance": 0-10 score,
      "summary": "detailed analysis",
      "dataPoints": ["specific data point 1", "specific data point 2"]
    }
  },
  "entityNames": ["entity1", "entity2"],
  "insights": ["insight1", "insight2"],
  "sensitiveInfo": true/false
}

Only include categories with relevance > 0.
File content:
{{content}}
""",
    PROFILE_METRICS: """
Analyze the following preprocessed data file and extract ONLY factual metrics and hard data points. Focus on quantitative information that can be directly measured or counted.

File name: {{fileName}}

METRICS TO EXTRACT:
1. FINANCIAL: transaction amounts (with dates), monthly spending totals, subscription costs and frequencies, income, savings
2. TRANSPORTATION: ride counts by service, monthly transportation spending, frequent destinations, average ride cost
3. TRAVEL: trips taken, destinations with dates, travel costs
4. DEMOGRAPHIC FACTS: name, age, location, employment

DO NOT include categories, subjective interpretations, speculative insights, summaries or recommendations.

Format your response as a JSON object with the following structure:
{
  "metrics": {
    "financial": {
      "transactions": [{"date": "YYYY-MM-DD", "amount": 123.45, "description": "brief factual description"}],
      "monthlySpending": {"2023-01": 1234.56},
      "subscriptions": [{"service": "name", "cost": 12.34, "frequency": "monthly/yearly"}],
      "totalSpent": 4567.89
    },
    "transportation": {
      "rides": {"total": 42, "uber": 24, "lyft": 18},
      "monthlySpending": {"2023-01": 123.45},
      "frequentDestinations": [{"location": "place", "count": 5}],
      "averageCost": 12.34
    },
    "travel": {
      "trips": [{"destination": "place", "dates": "YYYY-MM-DD to YYYY-MM-DD", "cost": 1234.56}],
      "totalCost": 4567.89
    },
    "demographics": {"name": "if found", "age": 0, "location": "if found", "employment": "if found"}
  }
}

Include ONLY sections where you have concrete numerical data or verifiable facts. Do not include empty or null values.

Here's the file content:
{{content}}
""",
    PERSONA: """
I'm building a personal data profile for a user. Update their existing personas with new information from one categorized data file.

File: {{fileName}}
File Type: {{fileType}}
File Summary: {{fileSummary}}

New category data (relevance, summary and data points per category):
{{categories}}

Existing personas for these categories:
{{personas}}

{{profile}}

Instructions:
1. Update each persona's traits with any new information
2. Add new insights not previously mentioned
3. Add the file to the persona's sources
4. Update the summary to be more comprehensive and usable by an ad-server or a campaign audience creation tool
5. Increase the completeness score (0-100) based on how much new information was added

Return JSON of the form:
{
  "personas": {
    "categoryName": {
      "type": "categoryName",
      "name": "Updated name if needed",
      "completeness": 0-100,
      "summary": "Updated summary",
      "insights": ["insight 1"],
      "dataPoints": ["dataPoint1"],
      "traits": {},
      "sources": ["existing sources", "{{fileName}}"]
    }
  }
}

Only make changes supported by the new data. Don't remove existing information unless it's clearly contradicted.
""",
}


def render_template(template: str, values: dict[str, Any]) -> str:
    def _sub(match: re.Match[str]) -> str:
        key = match.group(1)
        return str(values[key]) if key in values else match.group(0)

    return _PLACEHOLDER.sub(_sub, template)


class PromptLibrary:
    """Resolve a template by name (store override first) and render it."""

    def __init__(self, store: ObjectStore | None = None, key: str = "prompt-templates/prompts.json"):
        self._store = store
        self._key = key

    async def overrides(self) -> dict[str, str]:
        if self._store is None:
            return {}
        obj = await self._store.get_optional(self._key)
        if obj is None:
            return {}
        try:
            doc = obj.json()
        except InvalidInput as e:
            logger.warning("Ignoring prompt overrides at %s: %s", self._key, e)
            return {}
        if not isinstance(doc, dict):
            logger.warning("Ignoring prompt overrides at %s: not a JSON object", self._key)
            return {}
        return {k: v for k, v in doc.items() if isinstance(v, str)}

    async def template(self, name: str) -> str:
        overrides = await self.overrides()
        if name in overrides:
            return overrides[name]
        return DEFAULT_TEMPLATES[name]

    async def render(self, name: str, **values: Any) -> Prompt:
        template = await self.template(name)
        return Prompt(
            system=SYSTEM_MESSAGES[name],
            user=render_template(template, values).strip(),
            temperature=TEMPERATURES.get(name),
        )


__all__ = [
    "CATEGORIZE",
    "DEFAULT_TEMPLATES",
    "PERSONA",
    "PROFILE_METRICS",
    "PromptLibrary",
    "SYSTEM_MESSAGES",
    "TEMPERATURES",
    "render_template",
]
