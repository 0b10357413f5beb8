"""
Scoring parameters loader: reads scoring_params.json.
Edit that file to retune factor weights and recommendation bands
without touching code. The file is read once, when the orchestrator is built.
"""

import json
from dataclasses import fields
from pathlib import Path

from autonomy_engine import ScoringPolicy
from config import load_config


def load_params(path: Path = None) -> dict:
    if path is None:
        path = Path(load_config()["scoring_params_file"])
    if path.exists():
        with open(path) as f:
            return json.load(f)
    return {}


def load_scoring_policy(path: Path = None) -> ScoringPolicy:
    """Build a ScoringPolicy from the params file; unknown keys are ignored."""
    raw = load_params(path)
    known = {f.name for f in fields(ScoringPolicy)}
    return ScoringPolicy(**{k: v for k, v in raw.items() if k in known})
