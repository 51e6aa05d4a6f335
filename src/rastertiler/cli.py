"""Command-line interface for rastertiler.

Provides the ``render`` and ``merge`` commands using the Typer framework.
"""
import logging
from pathlib import Path
from typing import Optional

import typer
from tqdm import tqdm

from . import config
from .errors import RasterTilerError
from .merge import merge_tilesets
from .render import RenderOptions, render_tileset
from .tilegrid import MAX_ZOOM

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

app = typer.Typer(
    help="Render single-band rasters into MBTiles tilesets and merge tilesets.",
    no_args_is_help=True,
)


def _fail(err: Exception):
    typer.echo(f"Error: {err}", err=True)
    raise typer.Exit(code=1)


@app.callback()
def main(
    env: str = typer.Option("DEFAULT", "--env", help="Settings environment to use."),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Logging level, e.g. DEBUG or WARNING."),
):
    """Render and merge MBTiles tilesets."""
    if env != "DEFAULT":
        config.change_env(env)
    level = (log_level or config.get("log_level")).upper()
    if not isinstance(logging.getLevelName(level), int):
        raise typer.BadParameter(f"unknown log level: {level}", param_hint="--log-level")
    logging.basicConfig(level=level, format=LOG_FORMAT)


@app.command()
def render(
    source: Path = typer.Argument(..., exists=True, dir_okay=False,
                                  help="Single-band integer raster."),
    destination: Path = typer.Argument(..., dir_okay=False, help="Output MBTiles file."),
    min_zoom: Optional[int] = typer.Option(None, "--minzoom", "-Z", min=0, max=MAX_ZOOM,
                                           help="Minimum zoom level."),
    max_zoom: Optional[int] = typer.Option(None, "--maxzoom", "-z", min=0, max=MAX_ZOOM,
                                           help="Maximum zoom level."),
    tile_size: Optional[int] = typer.Option(None, "--tilesize", "-s", min=1,
                                            help="Tile size in pixels."),
    name: Optional[str] = typer.Option(None, "--name", "-n",
                                       help="Tileset name; defaults to the output file name."),
    description: str = typer.Option("", "--description", "-d", help="Tileset description."),
    attribution: str = typer.Option("", "--attribution", "-a", help="Tileset attribution."),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", min=1,
                                          help="Number of render threads."),
    colormap: Optional[str] = typer.Option(
        None, "--colormap", "-c", help='Colormap as "value:#RRGGBB,..."; default is grayscale.'),
    disable_overviews: bool = typer.Option(
        False, "--disable-overviews", help="Always read full-resolution source pixels."),
    skip_empty: bool = typer.Option(
        False, "--skip-empty", help="Omit tiles without valid pixels."),
    progress: bool = typer.Option(True, "--progress/--no-progress", help="Show a progress bar."),
):
    """Render a single-band raster into an MBTiles tileset."""
    try:
        options = RenderOptions.from_config(
            min_zoom=min_zoom,
            max_zoom=max_zoom,
            tile_size=tile_size,
            name=name,
            description=description,
            attribution=attribution,
            workers=workers,
            colormap=colormap,
            use_overviews=False if disable_overviews else None,
            skip_empty=True if skip_empty else None,
        )
        with tqdm(desc="Rendering tiles", unit="tile", disable=not progress) as pbar:
            metadata = render_tileset(
                source, destination, options,
                observers=[lambda tile: pbar.update(1)],
                on_start=lambda total: pbar.reset(total=total),
            )
    except RasterTilerError as err:
        _fail(err)

    typer.echo(f"Wrote {destination} (zoom {metadata.minzoom}-{metadata.maxzoom})")


@app.command()
def merge(
    left: Path = typer.Argument(..., exists=True, dir_okay=False, help="First MBTiles file."),
    right: Path = typer.Argument(..., exists=True, dir_okay=False,
                                 help="Second MBTiles file; its tiles win on overlap."),
    output: Path = typer.Argument(..., dir_okay=False, help="Output MBTiles file."),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Override the tileset name."),
    description: Optional[str] = typer.Option(None, "--description", "-d",
                                              help="Override the tileset description."),
    attribution: Optional[str] = typer.Option(None, "--attribution", "-a",
                                              help="Override the tileset attribution."),
    progress: bool = typer.Option(True, "--progress/--no-progress", help="Show a progress bar."),
):
    """Merge two MBTiles tilesets; tiles of the second take precedence."""
    try:
        with tqdm(desc="Copying tiles", unit="tile", disable=not progress) as pbar:
            metadata = merge_tilesets(
                left, right, output,
                name=name,
                description=description,
                attribution=attribution,
                batch_size=config.get("batch_size"),
                observers=[lambda tile: pbar.update(1)],
            )
    except RasterTilerError as err:
        _fail(err)

    typer.echo(f"Wrote {output} (zoom {metadata.minzoom}-{metadata.maxzoom})")
