"""Default conversion settings shared by the CLI and heightmap_stl.convert()."""

DEFAULTS = {
    "instrument": "VHX-7100",
    # Either a magnification label ("500x") or a raw mm-per-pixel factor.
    "magnification": "1",
    "z_scale": 1.0,
    "downsample": 1,
    # Grid units below the lowest sample.
    "base_thickness": 1.0,
    "solid_name": "heightmap",
    "workers": 1,
}
