"""
Core configuration — single source of truth for fact-ledger constants,
scheduler weights, external service endpoints and role tables.

Import from here in all services rather than hardcoding values.
"""
from __future__ import annotations

import os

# ── External services ─────────────────────────────────────────────────────────
OPENWEATHER_API_KEY: str = os.getenv("OPENWEATHER_API_KEY", "")
OPENWEATHER_BASE_URL: str = os.getenv("OPENWEATHER_BASE_URL", "https://api.openweathermap.org")
RESEND_API_KEY: str = os.getenv("RESEND_API_KEY", "")
RESEND_API_URL: str = os.getenv("RESEND_API_URL", "https://api.resend.com/emails")
EMAIL_FROM: str = os.getenv("EMAIL_FROM", "BuildUnion <admin@buildunion.ca>")

# Per-call HTTP timeouts (seconds)
HTTP_TIMEOUTS: dict[str, float] = {
    "weather": 10.0,
    "email": 15.0,
    "ai_analysis": 120.0,   # no latency guarantee; this only bounds a hung socket
}

# ── Secondary (device-local) cache ────────────────────────────────────────────
FACT_CACHE_DIR: str = os.getenv("FACT_CACHE_DIR", os.path.join(os.path.expanduser("~"), ".buildunion", "facts"))

# ── AI analysis engine routing by subscription tier ───────────────────────────
AI_ENGINE_CONFIG: dict[str, dict[str, object]] = {
    "premium": {
        "visual_model": os.getenv("LLM_PRIMARY_MODEL", "gemini/gemini-2.5-flash"),
        "code_model": os.getenv("LLM_FALLBACK_MODEL", "openai/gpt-5-mini"),
        "visual_tokens": 2000,
        "code_tokens": 1500,
        "dual_engine": True,
    },
    "pro": {
        "visual_model": os.getenv("LLM_PRIMARY_MODEL", "gemini/gemini-2.5-flash-lite"),
        "code_model": os.getenv("LLM_FALLBACK_MODEL", "openai/gpt-5-nano"),
        "visual_tokens": 1200,
        "code_tokens": 800,
        "dual_engine": True,
    },
    # Free tier: single engine only
    "free": {
        "visual_model": os.getenv("LLM_PRIMARY_MODEL", "gemini/gemini-2.5-flash-lite"),
        "code_model": None,
        "visual_tokens": 600,
        "code_tokens": 0,
        "dual_engine": False,
    },
}

ANALYSIS_TYPES: tuple[str, ...] = ("full", "quick", "financial", "timeline", "risk", "obc", "visual")


# ── Roles ─────────────────────────────────────────────────────────────────────
# Roles allowed to submit quantity changes for owner approval
CHANGE_REQUEST_ROLES: frozenset[str] = frozenset({"foreman", "subcontractor"})

# Roles that may toggle only the tasks assigned to them
WORKER_CLASS_ROLES: frozenset[str] = frozenset({"worker", "inspector", "subcontractor"})


# ── Task phase scheduler ──────────────────────────────────────────────────────
# Ordered phase table: (id, name, weight %, verification label)
PHASE_DEFINITIONS: list[dict[str, object]] = [
    {"id": "demolition",   "name": "Demolition",     "weight": 15, "verification": "Site Clear Photo"},
    {"id": "preparation",  "name": "Preparation",    "weight": 25, "verification": "Prep Complete Checklist"},
    {"id": "installation", "name": "Installation",   "weight": 45, "verification": "Progress Photos"},
    {"id": "finishing",    "name": "Finishing & QC", "weight": 15, "verification": "Final Inspection (OBC)"},
]

# Work-task priority by position among the active phases; later phases get the default
WORK_PRIORITY_BY_POSITION: tuple[str, ...] = ("critical", "high")
DEFAULT_WORK_PRIORITY: str = "medium"

VERIFICATION_PRIORITY: str = "critical"

# SITE_CONDITION value that pulls the demolition phase into the schedule
DEMOLITION_SITE_CONDITION: str = "demolition"


# ── Weather construction-alert thresholds ─────────────────────────────────────
WEATHER_ALERT_THRESHOLDS: dict[str, float] = {
    "frost_c": 0.0,
    "frost_danger_c": -10.0,
    "heat_feels_like_c": 30.0,
    "heat_danger_c": 35.0,
    "rain_mm_h": 2.5,
    "rain_danger_mm_h": 7.5,
    "wind_gust_ms": 11.1,          # 40 km/h
    "wind_danger_ms": 17.0,
    "snow_danger_mm_h": 10.0,
    "visibility_m": 1000.0,
    "visibility_danger_m": 500.0,
}

WEATHER_FORECAST_DAYS: int = 5
