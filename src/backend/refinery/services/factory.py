"""
Wires LLM-backed services and the refinement config from Settings.

The judge panel (ids, roles, weights, models) is built here as data; the
core never sees model names.
"""
from __future__ import annotations

from typing import List, Optional

from refinery.config import Settings, settings as default_settings
from refinery.core.config import JudgeDef, JudgeRole, RefinementConfig, get_config
from refinery.core.session import RefinementServices
from refinery.services.fixer import LLMEntailmentChecker, LLMFixer
from refinery.services.judges import LLMJudge
from refinery.services.regenerator import LLMRegenerator


def _slug(model_id: str) -> str:
    return model_id.split("/")[-1].replace(".", "-")


def build_judge_panel(cfg: Optional[Settings] = None) -> List[JudgeDef]:
    cfg = cfg or default_settings
    judges = [
        JudgeDef(
            judge_id=f"cheap_{_slug(cfg.judge_cheap_model)}",
            role=JudgeRole.CHEAP,
            weight=cfg.judge_cheap_weight,
            model=cfg.judge_cheap_model,
            focus=list(cfg.judge_focus.get(cfg.judge_cheap_model, [])),
        )
    ]
    for model in cfg.judge_panel_models:
        judges.append(JudgeDef(
            judge_id=f"panel_{_slug(model)}",
            role=JudgeRole.PANEL,
            weight=cfg.judge_panel_weight,
            model=model,
            focus=list(cfg.judge_focus.get(model, [])),
        ))
    if cfg.judge_tiebreaker_model:
        judges.append(JudgeDef(
            judge_id=f"tiebreaker_{_slug(cfg.judge_tiebreaker_model)}",
            role=JudgeRole.TIEBREAKER,
            weight=cfg.judge_tiebreaker_weight,
            model=cfg.judge_tiebreaker_model,
            focus=list(cfg.judge_focus.get(cfg.judge_tiebreaker_model, [])),
        ))
    return judges


def build_config(
    mode: Optional[str] = None,
    cfg: Optional[Settings] = None,
    **overrides,
) -> RefinementConfig:
    """Operation-mode preset + judge panel + limits from settings, then per-request overrides."""
    cfg = cfg or default_settings
    config = get_config(mode or cfg.refinement_mode, judges=build_judge_panel(cfg))
    config = config.with_overrides(
        max_iterations=cfg.refinement_max_iterations,
        max_seconds=cfg.refinement_max_seconds,
        max_model_calls=cfg.refinement_max_model_calls,
        judge_timeout_seconds=cfg.judge_timeout_seconds,
        seed=cfg.refinement_seed,
        min_word_count=cfg.refinement_min_word_count,
        required_sections=list(cfg.refinement_required_sections),
    )
    return config.with_overrides(**overrides)


def build_services(config: RefinementConfig, cfg: Optional[Settings] = None) -> RefinementServices:
    cfg = cfg or default_settings
    judges = {
        j.judge_id: LLMJudge(j.judge_id, j.model, temperature=cfg.judge_temperature, focus=j.focus)
        for j in config.judges
    }
    return RefinementServices(
        judges=judges,
        fixer=LLMFixer(cfg.fixer_model),
        entailment=LLMEntailmentChecker(cfg.entailment_model),
        regenerator=LLMRegenerator(cfg.regenerator_model),
    )
