import pytest

from heightmap_stl import (
    INSTRUMENTS,
    PIXEL_SIZES_UM,
    InvalidScaleError,
    ScaleProfile,
    magnifications,
    resolve_scale_profile,
    resolve_xy_scale,
)


def test_known_magnification_is_converted_to_mm(capsys):
    assert resolve_xy_scale("500x", "VHX-7100") == pytest.approx(0.000208)
    assert resolve_xy_scale("20x", "VHX-7020") == pytest.approx(0.0073)
    assert "[WARN]" not in capsys.readouterr().out


def test_magnification_label_is_case_insensitive():
    assert resolve_xy_scale(" 100X ", "VHX-7100") == pytest.approx(0.00104)


def test_numeric_factor_is_used_directly():
    assert resolve_xy_scale(0.5) == 0.5
    assert resolve_xy_scale("0.25") == 0.25


def test_unknown_magnification_falls_back_to_one_with_warning(capsys):
    assert resolve_xy_scale("123x", "VHX-7100") == 1.0
    out = capsys.readouterr().out
    assert "[WARN]" in out
    assert "123x" in out


def test_unknown_instrument_falls_back_to_one_with_warning(capsys):
    assert resolve_xy_scale("500x", "VHX-9999") == 1.0
    assert "Unknown microscope" in capsys.readouterr().out


def test_unparseable_scale_is_treated_as_unknown_label(capsys):
    assert resolve_xy_scale("abc", "VHX-7100") == 1.0
    assert "[WARN]" in capsys.readouterr().out


@pytest.mark.parametrize("bad", [0, -1.5, float("nan"), float("inf"), "0"])
def test_non_positive_numeric_scale_is_rejected(bad):
    with pytest.raises(InvalidScaleError):
        resolve_xy_scale(bad)


def test_y_scale_defaults_to_x_scale():
    profile = resolve_scale_profile("200x", "VHX-7100", z_scale=2.0)
    assert profile.y == profile.x == pytest.approx(0.00052)
    assert profile.z == 2.0


def test_y_scale_override():
    profile = resolve_scale_profile(0.1, y_scale=0.3)
    assert profile == ScaleProfile(x=0.1, y=0.3, z=1.0)


def test_z_scale_must_be_positive():
    with pytest.raises(InvalidScaleError):
        resolve_scale_profile(1.0, z_scale=0.0)


def test_calibration_table_is_complete_for_every_instrument():
    assert set(INSTRUMENTS) == {"VHX-7100", "VHX-7020"}
    labels = magnifications("VHX-7100")
    assert labels[0] == "20x"
    assert labels[-1] == "6000x"
    assert labels == magnifications("VHX-7020")
    assert len(PIXEL_SIZES_UM) == 2 * len(labels)
    # Pixel size shrinks as magnification grows.
    for instrument in INSTRUMENTS:
        sizes = [PIXEL_SIZES_UM[(instrument, mag)] for mag in magnifications(instrument)]
        assert sizes == sorted(sizes, reverse=True)


def test_downsampled_profile_keeps_z():
    profile = ScaleProfile(x=0.5, y=0.25, z=3.0).downsampled(4)
    assert profile == ScaleProfile(x=2.0, y=1.0, z=3.0)
