"""
Text formatting of crtpower results.

Builds the plain-text reports printed by ``find_power`` and
``find_clusters`` from their result dictionaries.
"""

from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

__all__ = []


class _TableFormatter:
    """Fixed-width text tables."""

    def _format_value(self, value: Any, spec: Optional[str] = None) -> str:
        if isinstance(value, (float, np.floating)):
            if spec is not None:
                return format(value, spec)
            if np.isnan(value):
                return "NA"
            if value != 0 and abs(value) < 0.001:
                return f"{value:.6f}"
            return f"{value:.4f}"
        return str(value)

    def _create_table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        col_widths: Optional[List[int]] = None,
    ) -> str:
        if col_widths is None:
            col_widths = [max(len(str(h)), *(len(str(r[i])) for r in rows)) if rows else len(str(h)) for i, h in enumerate(headers)]

        lines = [" ".join(str(h).ljust(w) for h, w in zip(headers, col_widths))]
        lines.append(" ".join("-" * w for w in col_widths))
        for row in rows:
            lines.append(" ".join(str(cell).ljust(w) for cell, w in zip(row, col_widths)))
        return "\n".join(lines)

    def _frame_to_table(self, frame: pd.DataFrame, index_label: Optional[str] = None) -> str:
        headers = ([index_label or (frame.index.name or "")]) + [str(c) for c in frame.columns]
        rows = [[str(idx)] + [self._format_value(v) for v in row] for idx, row in zip(frame.index, frame.itertuples(index=False))]
        return self._create_table(headers, rows)


class _ResultFormatter(_TableFormatter):
    """Short and long reports for power runs and cluster sweeps."""

    def _format_short_power(self, data: Dict) -> str:
        model, results = data["model"], data["results"]
        estimate = results["power_estimate"]
        lines = [
            model["overview"],
            "=" * 60,
            f"Method: {model['method']} (alpha = {model['alpha']})",
            f"Clusters: {self._format_clusters(model['n_clusters'])}",
            "",
            f"Power = {estimate.power:.3f}  "
            f"({int(round((1 - estimate.alpha) * 100))}% CI: {estimate.lower:.3f}, {estimate.upper:.3f})",
            f"Based on {estimate.n_used}/{model['n_simulations']} completed simulations",
        ]
        failures = results.get("failures") or {}
        if failures.get("n_failed"):
            lines.append(f"Dropped {failures['n_failed']} failed fits: {failures['reasons']}")
        return "\n".join(lines)

    def _format_long_power(self, data: Dict) -> str:
        results = data["results"]
        sections = [self._format_short_power(data)]

        sections.append("\nVariance Parameters:\n" + self._frame_to_table(results["variance_parms"]))

        inputs = results["inputs"]
        sections.append(
            "\nInputs:\n"
            + self._create_table(["Parameter", "Value"], [[k, self._format_value(float(v))] for k, v in inputs.items()])
        )

        means = results["means"]
        rows = [[str(int(r.period)), str(int(r.trt)), self._format_value(float(r.mean))] for r in means.itertuples(index=False)]
        sections.append("\nGroup Means:\n" + self._create_table(["Period", "Trt", "Mean"], rows))

        sections.append("\nIntra-cluster Correlation:\n" + self._frame_to_table(results["icc"]))
        if data["model"]["design"] == "stepped-wedge":
            matrix = results["crossover_matrix"]
            rows = [[str(idx)] + [str(v) for v in row] for idx, row in zip(matrix.index, matrix.itertuples(index=False))]
            sections.append("\nCrossover Matrix:\n" + self._create_table(["Cluster"] + list(matrix.columns), rows))
        return "\n".join(sections)

    def _format_short_clusters(self, data: Dict) -> str:
        model, results = data["model"], data["results"]
        target = results["target_power"]
        achieved = results["first_achieved"]
        unit = "total clusters" if model["design"] == "stepped-wedge" else "clusters per arm"
        lines = [
            "Cluster Count Requirements",
            "=" * 60,
            model["overview"],
            f"Target power: {target:.2f}",
        ]
        if achieved > 0:
            lines.append(f"Required: {achieved} {unit}")
        else:
            lines.append(f"Target power not reached up to {model['cluster_range']['to_clusters']} {unit}")
        return "\n".join(lines)

    def _format_long_clusters(self, data: Dict) -> str:
        results = data["results"]
        rows = [
            [str(count), self._format_value(power, ".3f"), self._format_value(lo, ".3f"), self._format_value(hi, ".3f")]
            for count, power, lo, hi in zip(results["clusters_tested"], results["powers"], results["lower"], results["upper"])
        ]
        table = self._create_table(["Clusters", "Power", "Lower", "Upper"], rows)
        return self._format_short_clusters(data) + "\n\nPower by Cluster Count:\n" + table

    @staticmethod
    def _format_clusters(counts: Dict[str, Any]) -> str:
        if "total" in counts:
            return f"{counts['total']} total across {counts['steps']} steps"
        return f"{counts['ntrt']} control / {counts['trt']} treatment"


def _format_results(analysis_type: str, data: Dict, summary: str = "short") -> str:
    """Format a result dictionary as text.

    Args:
        analysis_type: ``"power"`` or ``"clusters"``.
        data: Result dictionary.
        summary: ``"short"`` or ``"long"``.
    """
    formatter = _ResultFormatter()
    if analysis_type == "power":
        return formatter._format_long_power(data) if summary == "long" else formatter._format_short_power(data)
    if analysis_type == "clusters":
        return formatter._format_long_clusters(data) if summary == "long" else formatter._format_short_clusters(data)
    raise ValueError(f"Unknown analysis type: {analysis_type!r}")
