"""Master playlist assembly for a finished resolution ladder."""

import os
import re
import tempfile
from pathlib import Path
from typing import List, Sequence

import structlog

from .errors import ManifestError
from .models import VariantDescriptor

logger = structlog.get_logger(__name__)

MASTER_PLAYLIST_NAME = "index.m3u8"

_P_LABEL_RE = re.compile(r"^(\d+)p")


def estimate_bandwidth(label: str) -> int:
    """Approximate BANDWIDTH (bits/s) from the label's nominal tier.

    A heuristic, not a measured bitrate: ``<N>p`` maps to ``N * 10 * 1024``
    and any other label to ``2000 * 1024``.
    """
    match = _P_LABEL_RE.match(label)
    if match:
        return int(match.group(1)) * 10 * 1024
    return 2000 * 1024


def variant_bandwidth(variant: VariantDescriptor, use_declared_bitrate: bool = False) -> int:
    if use_declared_bitrate and variant.bitrate_kbps:
        return variant.bitrate_kbps * 1000
    return estimate_bandwidth(variant.label)


def render_master_playlist(
    variants: Sequence[VariantDescriptor],
    use_declared_bitrate: bool = False,
) -> str:
    """Render master playlist text; variants keep their input order."""
    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]
    for variant in variants:
        bandwidth = variant_bandwidth(variant, use_declared_bitrate)
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={bandwidth},"
            f"RESOLUTION={variant.width}x{variant.height}"
        )
        lines.append(Path(variant.playlist_path).name)
    return "\n".join(lines) + "\n"


def build_master_playlist(
    output_dir: str,
    variants: Sequence[VariantDescriptor],
    use_declared_bitrate: bool = False,
) -> Path:
    """Write ``index.m3u8`` into ``output_dir`` referencing every variant.

    Every variant playlist must already exist next to the manifest. The file
    is written to a temporary name and renamed into place, so the final path
    never holds a partial manifest.

    Raises:
        ManifestError: no variants, a variant outside output_dir, a missing
            variant playlist, or an I/O failure while writing
    """
    out = Path(output_dir)
    if not variants:
        raise ManifestError("Cannot build a manifest without variants")

    missing: List[str] = []
    for variant in variants:
        playlist = Path(variant.playlist_path)
        if playlist.parent.resolve() != out.resolve():
            raise ManifestError(
                f"Variant {variant.label} playlist {playlist} is not inside {out}"
            )
        if not playlist.is_file():
            missing.append(variant.label)
    if missing:
        raise ManifestError(f"Variant playlists missing for: {', '.join(missing)}")

    content = render_master_playlist(variants, use_declared_bitrate)
    target = out / MASTER_PLAYLIST_NAME

    try:
        fd, tmp_path = tempfile.mkstemp(prefix=".index.", suffix=".tmp", dir=out)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_path, target)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise
    except OSError as e:
        raise ManifestError(f"Failed to write manifest {target}: {e}") from e

    logger.info("master_playlist_written", path=str(target), variants=len(variants))
    return target
