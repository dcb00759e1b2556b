"""Master profile and persona documents.

Both are merge-only aggregates: a source contributes once (tracked in
``mergedSources``) and nothing is ever removed by a merge.
"""

from __future__ import annotations

import copy
from typing import Any

from dnarouter.core.types import utcnow


def empty_profile(user_id: str) -> dict[str, Any]:
    return {
        "userId": user_id,
        "lastUpdated": utcnow().isoformat(),
        "fileCount": 0,
        "userProfile": {
            "demographics": {},
            "financialMetrics": {},
            "professionalMetrics": {},
            "socialMetrics": {"connectionsCount": 0, "platformsUsed": []},
            "healthMetrics": {},
            "travelMetrics": {},
            "technologyMetrics": {},
            "transportationMetrics": {"rides": {}, "monthlySpending": {}},
            "interests": [],
        },
        "sourceFiles": [],
        "mergedSources": {},
    }


def _number(value: Any) -> float | int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    return None


def merge_profile_metrics(profile: dict[str, Any], response: dict[str, Any]) -> dict[str, Any]:
    """Merge one extraction response (``{"metrics": {...}}``) into a profile copy.

    - transactions and trips are appended
    - monthly spending maps are overwritten per month
    - subscriptions are de-duplicated by service name (case-insensitive)
    - totals are summed
    - ride counts are summed per service and ``total`` recomputed
    - destinations are merged by location with summed counts
    - demographics keep the first non-empty value seen
    """
    updated = copy.deepcopy(profile)
    user_profile = updated.setdefault("userProfile", {})
    metrics = response.get("metrics") if isinstance(response, dict) else None
    if not isinstance(metrics, dict):
        return updated

    financial = metrics.get("financial")
    if isinstance(financial, dict):
        target = user_profile.setdefault("financialMetrics", {})
        if isinstance(financial.get("transactions"), list):
            target["transactions"] = list(target.get("transactions", [])) + financial["transactions"]
        if isinstance(financial.get("monthlySpending"), dict):
            target["monthlySpending"] = {
                **target.get("monthlySpending", {}),
                **financial["monthlySpending"],
            }
        if isinstance(financial.get("subscriptions"), list):
            existing = list(target.get("subscriptions", []))
            seen = {str(s.get("service", "")).lower() for s in existing if isinstance(s, dict)}
            for sub in financial["subscriptions"]:
                if not isinstance(sub, dict):
                    continue
                name = str(sub.get("service", "")).lower()
                if name in seen:
                    continue
                seen.add(name)
                existing.append(sub)
            target["subscriptions"] = existing
        total = _number(financial.get("totalSpent"))
        if total:
            target["totalSpent"] = (target.get("totalSpent") or 0) + total

    transportation = metrics.get("transportation")
    if isinstance(transportation, dict):
        target = user_profile.setdefault("transportationMetrics", {})
        rides = transportation.get("rides")
        previous_total = (target.get("rides") or {}).get("total", 0) or 0
        if isinstance(rides, dict):
            merged_rides = dict(target.get("rides") or {})
            for service, count in rides.items():
                n = _number(count)
                if service == "total" or n is None:
                    continue
                merged_rides[service] = (merged_rides.get(service) or 0) + n
            merged_rides["total"] = sum(
                v for k, v in merged_rides.items() if k != "total" and _number(v) is not None
            )
            target["rides"] = merged_rides
        if isinstance(transportation.get("monthlySpending"), dict):
            target["monthlySpending"] = {
                **target.get("monthlySpending", {}),
                **transportation["monthlySpending"],
            }
        if isinstance(transportation.get("frequentDestinations"), list):
            by_location: dict[str, dict[str, Any]] = {}
            for dest in list(target.get("frequentDestinations", [])) + transportation[
                "frequentDestinations"
            ]:
                if not isinstance(dest, dict) or not dest.get("location"):
                    continue
                key = str(dest["location"]).lower()
                if key in by_location:
                    by_location[key]["count"] = (by_location[key].get("count") or 0) + (
                        _number(dest.get("count")) or 0
                    )
                else:
                    by_location[key] = dict(dest)
            target["frequentDestinations"] = sorted(
                by_location.values(), key=lambda d: d.get("count") or 0, reverse=True
            )
        average = _number(transportation.get("averageCost"))
        if average:
            new_rides = _number((rides or {}).get("total")) if isinstance(rides, dict) else None
            existing_avg = target.get("averageCost") or 0
            if not existing_avg or not previous_total:
                target["averageCost"] = average
            elif new_rides:
                target["averageCost"] = (existing_avg * previous_total + average * new_rides) / (
                    previous_total + new_rides
                )

    travel = metrics.get("travel")
    if isinstance(travel, dict):
        target = user_profile.setdefault("travelMetrics", {})
        if isinstance(travel.get("trips"), list):
            target["trips"] = list(target.get("trips", [])) + travel["trips"]
            target["tripCount"] = len(target["trips"])
        total = _number(travel.get("totalCost"))
        if total:
            target["totalCost"] = (target.get("totalCost") or 0) + total

    demographics = metrics.get("demographics")
    if isinstance(demographics, dict):
        target = user_profile.setdefault("demographics", {})
        for key, value in demographics.items():
            if value and not target.get(key):
                target[key] = value

    return updated


def record_source(profile: dict[str, Any], file_name: str) -> dict[str, Any]:
    profile.setdefault("sourceFiles", []).append(
        {"fileName": file_name, "processedAt": utcnow().isoformat()}
    )
    profile["fileCount"] = len(profile["sourceFiles"])
    profile["lastUpdated"] = utcnow().isoformat()
    return profile


# ---- Personas ----------------------------------------------------------------

_PERSONA_DEFAULTS: dict[str, tuple[str, dict[str, Any]]] = {
    "financial": (
        "Financial Profile",
        {"spendingHabits": "Unknown", "financialServices": [], "subscriptions": []},
    ),
    "social": ("Social Profile", {"connections": 0, "platforms": [], "engagement": "Unknown"}),
    "professional": ("Professional Profile", {"skills": [], "experience": [], "education": []}),
    "entertainment": ("Entertainment Profile", {"preferences": [], "platforms": [], "content": []}),
}


def empty_personas(user_id: str) -> dict[str, Any]:
    return {
        "userId": user_id,
        "lastUpdated": utcnow().isoformat(),
        "personas": {},
        "mergedSources": {},
    }


def default_persona(category: str) -> dict[str, Any]:
    name, traits = _PERSONA_DEFAULTS.get(category, ("Custom Profile", {}))
    return {
        "type": category,
        "name": name,
        "lastUpdated": utcnow().isoformat(),
        "completeness": 10,
        "dataPoints": [],
        "summary": f"Initial {category} persona",
        "insights": [],
        "sources": [],
        "traits": copy.deepcopy(traits),
    }


def _sources_of(persona: dict[str, Any]) -> list[Any]:
    sources = persona.get("sources")
    return list(sources) if isinstance(sources, list) else []


def merge_persona(existing: dict[str, Any], update: Any, file_name: str) -> dict[str, Any]:
    """Overlay a model-produced persona on the existing one.

    Sources are unioned so the file is always recorded. A malformed update
    keeps the existing persona and only records the source.
    """
    merged = copy.deepcopy(existing)
    if isinstance(update, dict):
        for key, value in update.items():
            if key in ("sources", "type"):
                continue
            merged[key] = value
        sources = _sources_of(existing)
        update_sources = update.get("sources")
        for src in update_sources if isinstance(update_sources, list) else []:
            if isinstance(src, str) and src not in sources and src != "existing sources":
                sources.append(src)
    else:
        sources = _sources_of(existing)
    if file_name not in sources:
        sources.append(file_name)
    merged["sources"] = sources
    merged["lastUpdated"] = utcnow().isoformat()
    return merged


__all__ = [
    "default_persona",
    "empty_personas",
    "empty_profile",
    "merge_persona",
    "merge_profile_metrics",
    "record_source",
]
