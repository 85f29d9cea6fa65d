"""
hydrorating command-line interface.

Thin driver that reads inputs, runs the analysis components and writes
CSV/figure outputs.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import click
import pandas as pd

from .config import SmootherConfig, load_config
from .exceptions import HydroRatingError
from .measurements import clean_measurements


def _read_series(path: Path, column: str) -> pd.Series:
    df = pd.read_csv(path)
    date_col = "date" if "date" in df.columns else df.columns[0]
    if column not in df.columns:
        raise click.BadParameter(f"{path} has no '{column}' column")
    return pd.Series(
        pd.to_numeric(df[column], errors="coerce").values,
        index=pd.DatetimeIndex(pd.to_datetime(df[date_col]), name="date"),
        name=column,
    )


@click.group()
@click.option("-v", "--verbose", count=True, help="Increase log detail (-v info, -vv debug).")
def cli(verbose: int) -> None:
    """hydrorating - Rating curve uncertainty analysis tools."""
    level = logging.WARNING - 10 * min(verbose, 2)
    logging.basicConfig(level=level, format="%(asctime)s %(name)s %(levelname)s: %(message)s")


@cli.command()
@click.argument("measurements", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("-o", "--output", type=click.Path(dir_okay=False, path_type=Path), required=True)
@click.option("--keep-unspecified", is_flag=True, help="Retain Unspecified accuracy records.")
@click.option("--seed", type=int, default=None, help="Seed for the stage jitter.")
def clean(measurements: Path, output: Path, keep_unspecified: bool, seed: Optional[int]) -> None:
    """Clean a raw measurement CSV into log10 form with standard errors."""
    from dataclasses import replace

    try:
        cfg = load_config().ingest
        cfg = replace(cfg, keep_unspecified=keep_unspecified or cfg.keep_unspecified)
        if seed is not None:
            cfg = replace(cfg, seed=seed)
        cleaned = clean_measurements(pd.read_csv(measurements), cfg)
    except (HydroRatingError, FileNotFoundError) as exc:
        raise click.ClickException(str(exc))
    output.parent.mkdir(parents=True, exist_ok=True)
    cleaned.to_csv(output, index=False)
    click.echo(f"Wrote {len(cleaned)} cleaned measurements to {output}")


@cli.command()
@click.argument("measurements", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("-k", "--n-splines", type=int, default=10, show_default=True)
@click.option("-o", "--output-dir", type=click.Path(file_okay=False, path_type=Path), default=Path("./output"))
@click.option("--plot/--no-plot", default=False, help="Save a rating curve figure.")
def fit(measurements: Path, n_splines: int, output_dir: Path, plot: bool) -> None:
    """Fit a GAM rating curve to a measurement CSV."""
    from .smoother import RatingSmoother

    try:
        cleaned = clean_measurements(pd.read_csv(measurements), load_config().ingest)
        model = RatingSmoother(SmootherConfig(n_splines=n_splines)).fit(
            cleaned["stage"].values, cleaned["discharge"].values, label=measurements.stem
        )
    except (HydroRatingError, FileNotFoundError) as exc:
        raise click.ClickException(str(exc))

    output_dir.mkdir(parents=True, exist_ok=True)
    model.coefficient_table().to_csv(output_dir / "rating_coefficients.csv")
    model.training_frame().to_csv(output_dir / "rating_training.csv", index=False)
    click.echo(model.summary())

    if plot:
        import matplotlib

        matplotlib.use("Agg")
        from .plots import plot_rating_curve

        path = output_dir / "rating_curve.png"
        plot_rating_curve(model, measurements=cleaned, save_path=str(path))
        click.echo(f"Figure saved to {path}")


@cli.command()
@click.option("-c", "--config", "config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--site", "site_no", type=str, default=None, help="USGS site number.")
@click.option("--start", "start_date", type=str, default=None, help="Window start (YYYY-MM-DD).")
@click.option("--end", "end_date", type=str, default=None, help="Window end (YYYY-MM-DD).")
@click.option("--measurements", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--daily-stage", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--daily-flow", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("-o", "--output-dir", type=click.Path(file_okay=False, path_type=Path), default=None)
@click.option("--kalman/--no-kalman", default=None)
@click.option("--bayes/--no-bayes", default=None)
@click.option("--plots/--no-plots", default=False)
def analyze(
    config_path: Optional[Path],
    site_no: Optional[str],
    start_date: Optional[str],
    end_date: Optional[str],
    measurements: Optional[Path],
    daily_stage: Optional[Path],
    daily_flow: Optional[Path],
    output_dir: Optional[Path],
    kalman: Optional[bool],
    bayes: Optional[bool],
    plots: bool,
) -> None:
    """Run the full site analysis and write result tables."""
    from .pipeline import run_site_analysis

    try:
        config = load_config(
            config_path,
            site_no=site_no,
            start_date=start_date,
            end_date=end_date,
            output_dir=str(output_dir) if output_dir else None,
            run_kalman=kalman,
            run_bayes=bayes,
        )
        result = run_site_analysis(
            config,
            measurements=pd.read_csv(measurements) if measurements else None,
            daily_stage=_read_series(daily_stage, "stage") if daily_stage else None,
            daily_flow=_read_series(daily_flow, "discharge") if daily_flow else None,
        )
    except (HydroRatingError, FileNotFoundError) as exc:
        raise click.ClickException(str(exc))

    paths = result.save()
    click.echo(result.summary())
    click.echo(f"\nWrote {len(paths)} files to {config.output_dir}")

    if plots:
        import matplotlib

        matplotlib.use("Agg")
        from . import plots as rplots

        out = Path(config.output_dir)
        rplots.plot_rating_curve(result.spline, measurements=result.cleaned,
                                 reference_rating=result.reference_rating,
                                 save_path=str(out / "rating_curve.png"))
        if result.reconstruction is not None:
            rplots.plot_reconstruction(result.reconstruction, save_path=str(out / "reconstruction.png"))
        if result.posterior is not None:
            rplots.plot_posterior_curve(result.posterior, result.spline,
                                        save_path=str(out / "posterior_curve.png"))
        click.echo("Figures saved")


if __name__ == "__main__":
    cli()
