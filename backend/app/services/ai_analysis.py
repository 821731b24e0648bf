"""
AI project analysis — dual-engine invocation through litellm.

Engine routing by subscription tier (see AI_ENGINE_CONFIG):
  - free:         visual/summary engine only
  - pro, premium: visual engine + building-code validation engine

The primary engine must succeed. A failed secondary engine is tolerated: the
response carries ``dual_engine_used=False`` and ``degraded=True`` and the
caller renders whatever the primary engine returned.
"""
import json
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import litellm

from app.config import AI_ENGINE_CONFIG, ANALYSIS_TYPES, HTTP_TIMEOUTS
from app.models.fact_schema import CiteType, ProjectSnapshot, utc_now_iso
from app.services.errors import ExternalServiceDegraded
from app.services.fact_normalizer import normalize_records

logger = logging.getLogger("buildunion-ai")

litellm.set_verbose = False

SYSTEM_PROMPT = "You are an expert construction project analyst. Provide clear, actionable insights."

REGION_CODES = {
    "ontario": "Ontario Building Code (OBC) 2024",
    "quebec": "Quebec Construction Code (CCQ)",
    "bc": "BC Building Code 2024",
    "alberta": "Alberta Building Code 2019",
    "default": "National Building Code of Canada 2020",
}

_REGION_HINTS = [
    ("ontario", ("ontario", ", on")),
    ("quebec", ("quebec", ", qc")),
    ("bc", ("british columbia", ", bc")),
    ("alberta", ("alberta", ", ab")),
]

_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")


def detect_region(address: Optional[str], default: str = "ontario") -> str:
    lowered = (address or "").lower()
    for region, hints in _REGION_HINTS:
        if any(h in lowered for h in hints):
            return region
    return default


def parse_engine_output(text: str, raw_key: str) -> Dict[str, Any]:
    """First {...} block as JSON, else the raw text under ``raw_key``."""
    match = _JSON_BLOCK.search(text or "")
    if match:
        try:
            parsed = json.loads(match.group(0))
            if isinstance(parsed, dict):
                return parsed
        except ValueError:
            pass
    return {raw_key: text}


def project_facts(snapshot: ProjectSnapshot) -> Dict[str, Any]:
    """Flatten the snapshot into the prompt inputs."""
    gfa = 0
    for c in snapshot.citations:
        if c.cite_type == CiteType.GFA_LOCK.value:
            raw = c.metadata.get("gfa_value", c.value)
            gfa = raw if isinstance(raw, (int, float)) else 0
            break
    tasks = snapshot.active_tasks
    completed = sum(1 for t in tasks if t.status == "completed")
    fin = snapshot.financial
    return {
        "name": snapshot.profile.name or "Untitled project",
        "address": snapshot.profile.address or "",
        "trade": snapshot.profile.trade or "General",
        "gfa": gfa,
        "team_size": len(snapshot.team) + 1,
        "task_count": len(tasks),
        "completed_tasks": completed,
        "progress": round(completed / len(tasks) * 100) if tasks else 0,
        "start_date": fin.start_date.isoformat() if fin.start_date else None,
        "end_date": fin.end_date.isoformat() if fin.end_date else None,
        "material_cost": fin.material_cost or 0,
        "labor_cost": fin.labor_cost or 0,
        "total_budget": fin.total_cost or 0,
        "has_contracts": bool(snapshot.contracts),
    }


def build_primary_prompt(facts: Dict[str, Any], analysis_type: str) -> str:
    if analysis_type == "visual":
        return (
            "VISUAL SITE ANALYSIS - Construction Project Assessment\n"
            f"PROJECT: {facts['name']}\nLOCATION: {facts['address']}\nTRADE: {facts['trade']}\n"
            f"GFA: {facts['gfa']:,} sq ft\n\n"
            "Assess site condition, material status, work quality, progress and safety.\n"
            "Format as JSON with keys: siteCondition, materialStatus, qualityScore (0-100), "
            "progressPercent, safetyFlags (array), recommendations (array)."
        )
    return (
        f"PROJECT ANALYSIS ({analysis_type.upper()})\n"
        f"PROJECT: {facts['name']}\nLOCATION: {facts['address']}\nTRADE: {facts['trade']}\n"
        f"GFA: {facts['gfa']:,} sq ft\nTEAM SIZE: {facts['team_size']}\n"
        f"PROGRESS: {facts['completed_tasks']}/{facts['task_count']} tasks ({facts['progress']}%)\n"
        f"TIMELINE: {facts['start_date'] or 'Not set'} to {facts['end_date'] or 'Not set'}\n"
        f"BUDGET: ${facts['total_budget']:,.2f} (materials ${facts['material_cost']:,.2f}, "
        f"labor ${facts['labor_cost']:,.2f})\nCONTRACTS: {'yes' if facts['has_contracts'] else 'none'}\n\n"
        "Format as JSON with keys: summary, healthScore (0-100), risks (array), "
        "recommendations (array), nextSteps (array)."
    )


def build_code_prompt(facts: Dict[str, Any], region: str) -> str:
    code = REGION_CODES.get(region, REGION_CODES["default"])
    return (
        "BUILDING CODE COMPLIANCE VALIDATION\n"
        f"PROJECT: {facts['name']}\nLOCATION: {facts['address']}\nREGION: {region}\n"
        f"APPLICABLE CODE: {code}\nTRADE: {facts['trade']}\nGFA: {facts['gfa']:,} sq ft\n"
        f"TEAM SIZE: {facts['team_size']} workers\n"
        f"TIMELINE: {facts['start_date'] or 'Not set'} to {facts['end_date'] or 'Not set'}\n\n"
        f"Validate permits, structural, trade-specific, safety and inspection requirements against {code}.\n"
        "Format as JSON with keys: permitStatus (compliant/pending/missing), structuralFlags (array), "
        "tradeCompliance (object), safetyRequirements (array), inspectionSchedule (array), "
        "documentationGaps (array), overallCompliance (percentage 0-100), criticalIssues (array)."
    )


Completion = Callable[..., Awaitable[Any]]


class AIAnalysisClient:
    def __init__(self, store=None, acompletion: Optional[Completion] = None):
        self.store = store
        self._acompletion = acompletion or litellm.acompletion

    async def _call(self, model: str, prompt: str, max_tokens: int) -> str:
        response = await self._acompletion(
            model=model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            max_tokens=max_tokens,
            timeout=HTTP_TIMEOUTS["ai_analysis"],
        )
        return response.choices[0].message.content or ""

    async def _snapshot(self, project_id: str) -> ProjectSnapshot:
        if self.store is None:
            raise ExternalServiceDegraded("ai_analysis", "no snapshot and no store to read one")
        read = await self.store.read(project_id)
        return ProjectSnapshot(
            profile=read.profile,
            citations=tuple(normalize_records(read.records)),
            tasks=tuple(await self.store.list_tasks(project_id)),
            team=tuple(await self.store.list_team(project_id)),
            contracts=tuple(await self.store.list_contracts(project_id)),
            financial=read.financial,
        )

    async def invoke(
        self,
        project_id: str,
        analysis_type: str = "full",
        tier: str = "free",
        region: Optional[str] = None,
        snapshot: Optional[ProjectSnapshot] = None,
    ) -> Dict[str, Any]:
        if analysis_type not in ANALYSIS_TYPES:
            raise ValueError(f"Unknown analysis type '{analysis_type}'")
        engine = AI_ENGINE_CONFIG.get(tier, AI_ENGINE_CONFIG["free"])
        snapshot = snapshot or await self._snapshot(project_id)
        facts = project_facts(snapshot)
        region = detect_region(facts["address"], default=region or "ontario")

        start = time.perf_counter()
        try:
            primary_text = await self._call(
                engine["visual_model"], build_primary_prompt(facts, analysis_type), engine["visual_tokens"],
            )
        except Exception as e:
            logger.error(f"Primary AI engine failed: {e}", extra={"project_id": project_id})
            raise ExternalServiceDegraded("ai_analysis", str(e)) from e
        primary = parse_engine_output(primary_text, "rawAnalysis")

        secondary: Optional[Dict[str, Any]] = None
        degraded = False
        if engine["dual_engine"] and engine["code_model"]:
            try:
                code_text = await self._call(
                    engine["code_model"], build_code_prompt(facts, region), engine["code_tokens"],
                )
                secondary = parse_engine_output(code_text, "rawValidation")
            except Exception as e:
                degraded = True
                logger.warning(
                    f"Code validation engine failed, continuing without: {e}",
                    extra={"project_id": project_id},
                )

        logger.info(
            f"AI analysis '{analysis_type}' ({tier}) complete",
            extra={"project_id": project_id, "duration_ms": round((time.perf_counter() - start) * 1000, 2)},
        )
        return {
            "project_id": project_id,
            "analysis_type": analysis_type,
            "tier": tier,
            "generated_at": utc_now_iso(),
            "dual_engine_used": bool(engine["dual_engine"]) and secondary is not None,
            "degraded": degraded,
            "engines": {
                "visual": {"model": engine["visual_model"], "analysis": primary},
                "code": {
                    "model": engine["code_model"],
                    "region": region,
                    "validation": secondary,
                } if engine["dual_engine"] else None,
            },
            "project_snapshot": {
                "name": facts["name"],
                "gfa": facts["gfa"],
                "team_size": facts["team_size"],
                "progress": facts["progress"],
                "budget": facts["total_budget"],
                "region": region,
            },
            "analysis": {**primary, "code_compliance": secondary},
        }
