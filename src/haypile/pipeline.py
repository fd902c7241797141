"""
End-to-end haypile workflow: load the workbooks, reshape, summarize climate,
select and check the count and presence models, and write the report outputs.
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence
import logging

import pandas as pd

from . import config
from .data.loaders import load_survey, load_sites, load_climate
from .data.reshape import reshape_survey, prepare_model_dataset, attach_climate
from .data.climate import summarize_climate
from .modeling.selection import (
    SelectionResult,
    compare_families,
    dredge,
    model_rows,
    term_importance,
)
from .modeling.diagnostics import simulate_residuals
from .reporting import export
from .reporting.marginal import marginal_means, pairwise_ratios, effect_curve
from .reporting.summaries import (
    year_summary,
    paired_year_change,
    covariate_correlations,
    collinearity,
)

logger = logging.getLogger(__name__)


class HaypileAnalysis:
    """Runs the haypile workflow from workbooks to report tables and plots"""

    def __init__(self, survey_path: Path, sites_path: Path, climate_path: Path,
                 output_dir: Path = config.OUTPUT_DIR,
                 family: str = config.DEFAULT_FAMILY,
                 criterion: str = config.DEFAULT_CRITERION,
                 terms: Optional[Sequence[str]] = None,
                 n_sim: int = config.N_SIMULATIONS,
                 seed: int = config.RANDOM_SEED,
                 fit_presence: bool = True,
                 make_plots: bool = True):
        """
        Args:
            survey_path, sites_path, climate_path: Input workbooks (or CSVs)
            output_dir: Where tables and plots are written
            family: Count-model family ("poisson" or "nbinom2"); chosen by the analyst
                after reviewing diagnostics
            criterion: Ranking criterion for the subset search
            terms: Candidate fixed-effect terms (default config.CANDIDATE_TERMS)
            n_sim: Simulations for residual diagnostics
            seed: Random seed for diagnostics
            fit_presence: Also fit the logistic presence/absence model
            make_plots: Write PNG figures alongside the tables
        """
        self.survey_path = Path(survey_path)
        self.sites_path = Path(sites_path)
        self.climate_path = Path(climate_path)
        self.output_dir = Path(output_dir)
        self.family = family
        self.criterion = criterion
        self.terms = list(terms) if terms is not None else list(config.CANDIDATE_TERMS)
        self.n_sim = n_sim
        self.seed = seed
        self.fit_presence = fit_presence
        self.make_plots = make_plots

    def load(self) -> Dict[str, pd.DataFrame]:
        for path in (self.survey_path, self.sites_path, self.climate_path):
            if not path.exists():
                raise FileNotFoundError(f"Input file not found: {path}")
        return {
            "survey": load_survey(self.survey_path),
            "sites": load_sites(self.sites_path),
            "climate": load_climate(self.climate_path),
        }

    def run(self) -> Dict:
        """
        Run every stage in order.

        Returns:
            Dictionary with the intermediate tables, selection results and
            diagnostics for the count model (and presence model if enabled)
        """
        print(f"\n{'='*70}")
        print("PIKA HAYPILE ANALYSIS")
        print(f"{'='*70}")

        raw = self.load()

        # --- Reshape and join ---
        survey_long = reshape_survey(raw["survey"])
        data, scaling = prepare_model_dataset(survey_long, raw["sites"])
        print(f"\nSurvey records: {len(survey_long)} site-years from {survey_long['site'].nunique()} sites")

        # --- Climate ---
        climate = summarize_climate(raw["climate"])
        export.write_table(climate, self.output_dir, "climate_summary")
        export.write_table(attach_climate(data, climate), self.output_dir, "model_dataset")

        # --- Exploration ---
        summaries = self._explore(survey_long, data)
        if self.make_plots:
            export.plot_density_by_year(data, self.output_dir)
            if len(climate):
                export.plot_climate_summary(climate, self.output_dir)

        results = {
            "survey_long": survey_long,
            "data": data,
            "scaling": scaling,
            "climate": climate,
            "summaries": summaries,
        }

        # --- Count model ---
        print(f"\n{'='*70}")
        print(f"COUNT MODEL ({self.family})")
        print(f"{'='*70}")
        families = compare_families(data, config.COUNT_RESPONSE, terms=self.terms,
                                    exposure=config.EXPOSURE_COLUMN)
        export.write_table(families, self.output_dir, "count_family_comparison")
        results["family_comparison"] = families

        results["count"] = self._select_and_report(
            data, scaling, response=config.COUNT_RESPONSE, family=self.family,
            exposure=config.EXPOSURE_COLUMN, prefix="count")

        # --- Presence model ---
        if self.fit_presence:
            print(f"\n{'='*70}")
            print("PRESENCE MODEL (binomial)")
            print(f"{'='*70}")
            presence_rows = model_rows(data, config.PRESENCE_RESPONSE, self.terms,
                                       config.SITE_COLUMN)
            if presence_rows[config.PRESENCE_RESPONSE].nunique() < 2:
                logger.warning("Presence is constant across site-years; skipping presence model")
                print("\nSkipped: haypiles present (or absent) at every site-year")
            else:
                results["presence"] = self._select_and_report(
                    data, scaling, response=config.PRESENCE_RESPONSE, family="binomial",
                    exposure=None, prefix="presence")

        print(f"\n{'='*70}")
        print(f"Analysis complete. Outputs in {self.output_dir}")
        print(f"{'='*70}\n")
        return results

    def _explore(self, survey_long: pd.DataFrame, data: pd.DataFrame) -> Dict:
        by_year = year_summary(data)
        per_site, paired_test = paired_year_change(survey_long)
        correlations = covariate_correlations(data)
        vif = collinearity(data)

        export.write_table(by_year, self.output_dir, "year_summary")
        export.write_table(per_site, self.output_dir, "paired_density_change")
        export.write_table(pd.DataFrame([paired_test]), self.output_dir, "paired_density_test")
        export.write_table(correlations, self.output_dir, "density_correlations")
        export.write_table(vif, self.output_dir, "covariate_vif")

        print("\nDensity by year:")
        print(by_year.to_string(index=False))
        return {
            "year_summary": by_year,
            "paired_change": per_site,
            "paired_test": paired_test,
            "correlations": correlations,
            "vif": vif,
        }

    def _select_and_report(self, data: pd.DataFrame, scaling: Dict, response: str,
                           family: str, exposure: Optional[str], prefix: str) -> Dict:
        selection = dredge(data, response, terms=self.terms, groups=config.SITE_COLUMN,
                           family=family, exposure=exposure, criterion=self.criterion)
        top = selection.top_model
        diagnostics = simulate_residuals(top, n_sim=self.n_sim, seed=self.seed)

        print(f"\nTop model: {top.formula}")
        print(f"  {self.criterion.upper()} weight: {selection.table.iloc[0]['weight']:.3f}, "
              f"models within delta 2: {len(selection.within_delta(2.0))}")
        if diagnostics.passed:
            print("  Residual diagnostics: passed")
        else:
            print("  Residual diagnostics: CONCERNS, review before reporting")
            for concern in diagnostics.concerns:
                print(f"    - {concern}")

        export.write_table(selection.table, self.output_dir, f"{prefix}_model_selection")
        export.write_table(term_importance(selection), self.output_dir, f"{prefix}_term_importance")
        export.write_table(export.coefficient_table(top, diagnostics), self.output_dir,
                           f"{prefix}_top_model_coefficients")
        export.write_table(diagnostics.tests, self.output_dir, f"{prefix}_residual_tests")

        effects = self._marginal_effects(selection, scaling, prefix)
        if self.make_plots:
            export.plot_residual_diagnostics(diagnostics, self.output_dir, f"{prefix}_residuals")

        return {"selection": selection, "diagnostics": diagnostics, **effects}

    def _marginal_effects(self, selection: SelectionResult, scaling: Dict, prefix: str) -> Dict:
        top = selection.top_model
        means = marginal_means(top, focal="year")
        ratios = pairwise_ratios(top, focal="year")
        elevation = effect_curve(top, "elevation_scaled", scaling=scaling.get("elevation"))
        elevation_by_year = effect_curve(top, "elevation_scaled",
                                         scaling=scaling.get("elevation"), by="year")
        road = effect_curve(top, "road_dist")

        export.write_table(means, self.output_dir, f"{prefix}_marginal_means_year")
        export.write_table(ratios, self.output_dir, f"{prefix}_year_ratios")
        export.write_table(elevation, self.output_dir, f"{prefix}_effect_elevation")
        export.write_table(elevation_by_year, self.output_dir, f"{prefix}_effect_elevation_by_year")
        export.write_table(road, self.output_dir, f"{prefix}_effect_road_dist")

        if self.make_plots:
            export.plot_marginal_means(means, "year", self.output_dir, f"{prefix}_marginal_means_year")
            export.plot_effect_curve(elevation_by_year, "Elevation", self.output_dir,
                                     f"{prefix}_effect_elevation", by="year")
            export.plot_effect_curve(road, "Distance to road", self.output_dir,
                                     f"{prefix}_effect_road_dist")

        return {
            "marginal_means": means,
            "ratios": ratios,
            "effect_elevation": elevation,
            "effect_elevation_by_year": elevation_by_year,
            "effect_road_dist": road,
        }
