"""
FITS file utilities for the tile-dedistort runner.

Functions for reading mono frames and writing registered/stacked results.
"""

from pathlib import Path
from typing import Any

import numpy as np
from astropy.io import fits


def is_fits_image_path(p: Path) -> bool:
    """Check if path has FITS extension."""
    suf = p.suffix.lower()
    return suf in {".fit", ".fits", ".fts"}


def read_fits_header(path: Path) -> Any:
    """Read primary header without loading data."""
    return fits.getheader(str(path), ext=0)


def fits_image_shape(path: Path) -> tuple[int, int]:
    """Return (height, width) of the primary image from its header."""
    hdr = read_fits_header(path)
    return int(hdr["NAXIS2"]), int(hdr["NAXIS1"])


def read_fits_float(path: Path) -> tuple[np.ndarray, Any]:
    """Read FITS file as float32 array with header."""
    hdr = fits.getheader(str(path), ext=0)
    data = fits.getdata(str(path), ext=0)
    if data is None:
        raise RuntimeError(f"no data in FITS: {path}")
    return np.asarray(data).astype("float32", copy=False), hdr


def write_fits_float(path: Path, data: np.ndarray, header: Any = None, overwrite: bool = True) -> None:
    """Write float32 image to FITS, optionally with a header to carry over."""
    hdu = fits.PrimaryHDU(data=np.asarray(data, dtype=np.float32), header=header)
    hdu.writeto(str(path), overwrite=overwrite)


def discover_fits_files(input_dir: Path) -> list[Path]:
    """List FITS files of a directory in name order."""
    return sorted(p for p in Path(input_dir).iterdir() if p.is_file() and is_fits_image_path(p))
