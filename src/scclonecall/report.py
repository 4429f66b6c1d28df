from __future__ import annotations

import datetime as _dt
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from jinja2 import Template

logger = logging.getLogger(__name__)


_REPORT_TEMPLATE = Template(
    """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>SCCloneCall Report</title>
  <style>
    body { font-family: Arial, Helvetica, sans-serif; margin: 24px; }
    code, pre { background: #f6f8fa; padding: 2px 4px; border-radius: 4px; }
    h1, h2, h3 { margin-top: 1.2em; }
    table { border-collapse: collapse; margin-top: 0.6em; }
    th, td { border: 1px solid #ddd; padding: 8px; }
    th { background: #f2f2f2; text-align: left; }
    .grid { display: grid; grid-template-columns: 1fr 1fr; gap: 16px; }
    .card { border: 1px solid #ddd; border-radius: 8px; padding: 12px; }
    .small { color: #666; font-size: 0.9em; }
    img { max-width: 100%; height: auto; border: 1px solid #eee; border-radius: 6px; }
  </style>
</head>
<body>

<h1>SCCloneCall {{ title }}</h1>
<p class="small">Generated: {{ generated_at }}</p>

<h2>Inputs</h2>
<table>
  <tr><th>Pileup</th><td><code>{{ pileup }}</code></td></tr>
  {% for name, value in inputs.items() %}
  <tr><th>{{ name }}</th><td><code>{{ value }}</code></td></tr>
  {% endfor %}
</table>

{% if filtering %}
<h2>Significance filter</h2>
<table>
  <tr><th>Subcluster marker</th><td><code>{{ filtering.marker or "(root)" }}</code></td></tr>
  <tr><th>Sequencing error rate</th><td>{{ filtering.theta }}</td></tr>
  <tr><th>Significance level</th><td>{{ filtering.significance_level }}</td></tr>
  <tr><th>Groups present</th><td>{{ filtering.groups_present }} / {{ filtering.groups_total }}</td></tr>
  <tr><th>Positions examined</th><td>{{ filtering.positions_in }}</td></tr>
  <tr><th>Positions kept</th><td>{{ filtering.positions_out }}</td></tr>
  <tr><th>Average coverage</th><td>{{ "%.2f"|format(filtering.avg_coverage) }}</td></tr>
</table>
{% endif %}

{% if calling %}
<h2>Genotype calls</h2>
<table>
  <tr><th>Reference</th><td>{{ "diploid (remapped)" if calling.is_diploid else "haploid" }}</td></tr>
  <tr><th>Heterozygosity prior</th><td>{{ calling.hetero_prior }}</td></tr>
  <tr><th>Sequencing error rate</th><td>{{ calling.theta }}</td></tr>
</table>
<table>
  <tr><th>Cluster</th><th>Cells</th><th>Called</th><th>Variants</th><th>Het</th><th>Hom alt</th><th>Mean coverage</th><th>VCF</th></tr>
  {% for k, c in calling.clusters.items() %}
  <tr>
    <td>{{ k }}</td><td>{{ c.cells }}</td><td>{{ c.called }}</td><td>{{ c.variants }}</td>
    <td>{{ c.het }}</td><td>{{ c.hom_alt }}</td><td>{{ "%.1f"|format(c.mean_coverage) }}</td>
    <td><code>{{ c.vcf }}</code></td>
  </tr>
  {% endfor %}
</table>
{% endif %}

<h2>Plots</h2>
<div class="grid">
  {% for name, src in plots.items() %}
  <div class="card">
    <h3>{{ name.replace("_", " ")|capitalize }}</h3>
    <img src="{{ src }}" alt="{{ name }}">
  </div>
  {% endfor %}
</div>

<h2>Interpretation notes</h2>
<ul>
  <li>A position is kept when its non-dominant reads are too many to be sequencing errors of a single homozygous genotype.</li>
  <li>Genotypes are chosen among the two most frequent alleles of the pooled locus; rarer alleles are treated as noise.</li>
  <li>VCFs list only calls that differ from the reference genotype.</li>
</ul>

<hr>
<p class="small">SCCloneCall {{ version }}</p>
</body>
</html>"""
)


def render_report(
    *,
    outdir: str | Path,
    version: str,
    title: str,
    pileup: str,
    inputs: Dict[str, Any],
    plots: Dict[str, str],
    filtering: Optional[Dict[str, Any]] = None,
    calling: Optional[Dict[str, Any]] = None,
) -> Path:
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    html = _REPORT_TEMPLATE.render(
        generated_at=_dt.datetime.now().isoformat(timespec="seconds"),
        version=version,
        title=title,
        pileup=pileup,
        inputs=inputs,
        plots=plots,
        filtering=filtering,
        calling=calling,
    )

    out_path = outdir / "report.html"
    out_path.write_text(html, encoding="utf-8")
    logger.debug("Report rendered to %s", out_path)
    return out_path
