"""
End-to-end emission workflow: prepare -> sample -> fit -> predict -> segment -> diagnose.

Every stage runs through ``run_stage`` so that a fatal error surfaces as a
``PipelineStageError`` naming the stage. Non-fatal conditions are collected
in ``PipelineResult.flags`` and written to the run summary.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, TypeVar

import joblib
import numpy as np
import pandas as pd

from . import core
from .config import TIME_BLOCK_COL, WorkflowConfig
from .diagnostics import DiagnosticResult, check_autocorrelation
from .gamm import FittedGamm, attach_predictions, fit_gamm
from .plotting import plot_event_trends, plot_smooth_terms, set_plot_style
from .segments import Segment, build_segments, first_event_time, segment_summary

T = TypeVar("T")

EVENT_TRENDS_STEM = "Fig_event_trends"
SMOOTH_TERMS_STEM = "Fig_smooth_terms"


class PipelineStageError(RuntimeError):
    def __init__(self, stage: str, cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"stage '{stage}' failed: {cause}")


def run_stage(name: str, fn: Callable[..., T], *args, **kwargs) -> T:
    try:
        return fn(*args, **kwargs)
    except PipelineStageError:
        raise
    except Exception as exc:
        raise PipelineStageError(name, exc) from exc


@dataclass
class PipelineResult:
    config: WorkflowConfig
    report: core.PreparationReport
    sampled: pd.DataFrame
    augmented: pd.DataFrame
    model: FittedGamm
    segments: Dict[str, Segment]
    diagnostic: DiagnosticResult
    flags: Dict[str, object] = field(default_factory=dict)
    outputs: Dict[str, object] = field(default_factory=dict)
    runtime_seconds: float = 0.0


def _json_default(obj: object) -> object:
    if isinstance(obj, (np.integer,)):
        return int(obj)
    if isinstance(obj, (np.floating,)):
        return None if not np.isfinite(obj) else float(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, (pd.Timestamp,)):
        return obj.isoformat()
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _config_snapshot(cfg: WorkflowConfig) -> Dict[str, object]:
    snapshot = asdict(cfg)
    snapshot["model_spec"] = {
        "family": cfg.model_spec().family,
        "link": cfg.model_spec().link,
        "smooths": [term.label for term in cfg.model_spec().smooths],
        "correlation": f"ARMA({cfg.arma_p}, {cfg.arma_q})",
    }
    return snapshot


def _save_parquet(df: pd.DataFrame, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_parquet(path, engine="pyarrow", index=False, compression="snappy")


def resolve_input_path(cfg: WorkflowConfig) -> Path:
    path = Path(cfg.input_path)
    return path if path.is_absolute() else cfg.project_root / path


def save_table(df: pd.DataFrame, stem: str, tables_dir: Path, sheet: Optional[str] = None) -> Dict[str, Path]:
    """Write a table as CSV and as a formatted Excel sheet."""
    from openpyxl.styles import Alignment, Font

    tables_dir = Path(tables_dir)
    tables_dir.mkdir(parents=True, exist_ok=True)
    csv_path = tables_dir / f"{stem}.csv"
    xlsx_path = tables_dir / f"{stem}.xlsx"
    sheet = (sheet or stem)[:31]
    df.to_csv(csv_path, index=False)
    with pd.ExcelWriter(xlsx_path, engine="openpyxl") as writer:
        df.to_excel(writer, sheet_name=sheet, index=False)
        ws = writer.book[sheet]
        for cell in ws[1]:
            cell.font = Font(bold=True)
            cell.alignment = Alignment(wrap_text=False)
        for col in ws.columns:
            max_len = max(len(str(cell.value)) if cell.value is not None else 0 for cell in col)
            ws.column_dimensions[col[0].column_letter].width = min(max_len + 2, 40)
    return {"csv": csv_path, "xlsx": xlsx_path}


def _model_tables(model: FittedGamm, segments: Dict[str, Segment]) -> Dict[str, pd.DataFrame]:
    gam = model.gam_summary()
    lme = model.lme_summary()
    return {
        "Table_gam_fixed_effects": gam["fixed_effects"],
        "Table_gam_smooth_terms": gam["smooth_terms"],
        "Table_lme_variance_components": lme["variance_components"],
        "Table_lme_correlation": lme["correlation"],
        "Table_segments": segment_summary(segments),
    }


def run_pipeline(
    cfg: WorkflowConfig,
    raw: Optional[pd.DataFrame] = None,
    verbose: bool = True,
    persist: bool = True,
) -> PipelineResult:
    log = print if verbose else (lambda *args, **kwargs: None)
    start = time.perf_counter()

    if raw is None:
        raw = run_stage("load", core.load_observations, resolve_input_path(cfg))
    prepared, report = run_stage("prepare", core.prepare_observations, raw, cfg)
    log(f"[prepare] kept {report.n_clean} of {report.n_raw} records; dropped {report.dropped}")
    if prepared.empty:
        raise PipelineStageError("prepare", ValueError("no valid observation records after cleaning"))

    rng = core.make_rng(cfg.random_seed)
    sampled = run_stage("sample", core.stratified_sample, prepared, cfg.sampling_fraction, rng)
    n_blocks = int(prepared[TIME_BLOCK_COL].nunique())
    log(f"[sample] drew {sampled.shape[0]} records from {n_blocks} time blocks (fraction={cfg.sampling_fraction})")

    spec = cfg.model_spec()
    model = run_stage(
        "fit",
        fit_gamm,
        sampled,
        spec,
        max_pql_iter=cfg.max_pql_iter,
        pql_tolerance=cfg.pql_tolerance,
        verbose=verbose,
    )
    log(
        f"[fit] converged after {model.pql_iterations} PQL iterations; "
        f"edf={model.edf_total:.2f}, scale={model.scale:.4g}, "
        f"AR={np.round(model.ar_params, 4).tolist()}, MA={np.round(model.ma_params, 4).tolist()}"
    )

    augmented = run_stage("predict", attach_predictions, model, sampled)
    segments = run_stage("segments", build_segments, augmented)
    baseline_fallback = first_event_time(augmented) is None
    empty_segments: List[str] = [label for label, seg in segments.items() if seg.empty]
    if baseline_fallback:
        log("[segments] no precipitation event 1 record; post_0 spans every post_event_phase == 0 record")
    if empty_segments:
        log(f"[segments] empty segments: {empty_segments}")
    log(f"[segments] built {len(segments)} segments: {list(segments)}")

    diagnostic = run_stage("diagnostics", check_autocorrelation, model, augmented, nlags=cfg.diagnostic_lags)
    if not diagnostic.available:
        log(f"[diagnostics] {diagnostic.status.value}: {diagnostic.reason}")

    result = PipelineResult(
        config=cfg,
        report=report,
        sampled=sampled,
        augmented=augmented,
        model=model,
        segments=segments,
        diagnostic=diagnostic,
        flags={
            "dropped_records": dict(report.dropped),
            "baseline_fallback": baseline_fallback,
            "empty_segments": empty_segments,
            "diagnostic_status": diagnostic.status.value,
        },
    )
    if persist:
        result.outputs = persist_outputs(result, verbose=verbose)
    result.runtime_seconds = time.perf_counter() - start
    if persist:
        write_run_summary(result)
    log(f"[run] finished in {result.runtime_seconds:.1f} s")
    log(diagnostic.report())
    return result


def persist_outputs(result: PipelineResult, verbose: bool = True) -> Dict[str, object]:
    log = print if verbose else (lambda *args, **kwargs: None)
    cfg = result.config
    core.ensure_output_dirs(cfg)
    outputs: Dict[str, object] = {}

    augmented_path = cfg.intermediate_dir / "augmented_dataset.parquet"
    run_stage("persist", _save_parquet, result.augmented, augmented_path)
    outputs["augmented_dataset"] = augmented_path
    model_path = cfg.intermediate_dir / "fitted_gamm.joblib"
    run_stage("persist", joblib.dump, result.model, model_path)
    outputs["fitted_model"] = model_path

    tables = _model_tables(result.model, result.segments)
    outputs["tables"] = {
        stem: run_stage("tables", save_table, df, stem, cfg.tables_dir)["csv"] for stem, df in tables.items()
    }

    if cfg.make_figures:
        set_plot_style()
        trends = run_stage(
            "figures",
            plot_event_trends,
            result.augmented,
            result.segments,
            EVENT_TRENDS_STEM,
            cfg.figures_dir,
            lowess_frac=cfg.lowess_frac,
        )
        smooths = run_stage("figures", plot_smooth_terms, result.model, SMOOTH_TERMS_STEM, cfg.figures_dir)
        outputs["figures"] = [trends, trends.with_suffix(".svg"), smooths, smooths.with_suffix(".svg")]
    log(f"[run] outputs written under {cfg.project_root}")
    return outputs


def write_run_summary(result: PipelineResult) -> Path:
    cfg = result.config
    summary = {
        "step": "emission_gamm",
        "config": _config_snapshot(cfg),
        "records": {
            "raw": result.report.n_raw,
            "clean": result.report.n_clean,
            "sampled": int(result.sampled.shape[0]),
        },
        "preparation": result.report.to_dict(),
        "fit": result.model.fit_statistics(),
        "ar_params": result.model.ar_params,
        "ma_params": result.model.ma_params,
        "segments": {label: int(seg.frame.shape[0]) for label, seg in result.segments.items()},
        "flags": result.flags,
        "diagnostic": result.diagnostic.to_dict(),
        "runtime_seconds": result.runtime_seconds,
        "outputs": result.outputs,
    }
    cfg.logs_dir.mkdir(parents=True, exist_ok=True)
    path = cfg.logs_dir / "run_summary.json"
    with open(path, "w", encoding="utf-8") as fp:
        json.dump(summary, fp, ensure_ascii=False, indent=2, default=_json_default)
    return path
