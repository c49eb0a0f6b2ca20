"""Tests for config loading, overrides, validation and unit derivation."""

import pytest

from core.errors import ConfigurationError
from utils.backend import get_backend, to_numpy
from utils.settings import load_settings, load_settings_collective

from conftest import run_ranks

CONFIG = """
// comments and trailing commas are allowed
{
    nx: 16, ny: 8, nz: 4,
    TF: 2.0, NOUT: 4,
    massunits: 8.0,        // alias of MASS_UNITS
    LengthUnits: 2.0,
    TIME_UNITS: 4.0,
    NCHEM: 0,
}
"""


def write_config(tmp_path, text=CONFIG, name="run.json"):
    path = tmp_path/name
    path.write_text(text)
    return str(path)


class TestLoad:
    def test_json5_keys_and_aliases(self, tmp_path):
        s = load_settings(["--config", write_config(tmp_path)])
        assert (s["NX"], s["NY"], s["NZ"]) == (16, 8, 4)
        assert s["MASS_UNITS"] == 8.0
        assert s["LENGTH_UNITS"] == 2.0
        assert s["CONFIG_PATH"].endswith("run.json")

    def test_derived_values(self, tmp_path):
        s = load_settings(["--config", write_config(tmp_path)])
        assert s["DTOUT"] == pytest.approx(0.5)
        assert s["DENSITY_UNITS"] == pytest.approx(1.0)
        assert s["MOMENTUM_UNITS"] == pytest.approx(0.5)
        assert s["ENERGY_UNITS"] == pytest.approx(0.25)

    def test_command_line_overrides(self, tmp_path):
        s = load_settings(["--config", write_config(tmp_path), "--nx", "12", "--tf", "4",
                           "--nout", "2", "--debug", "--restart", "3"])
        assert s["NX"] == 12
        assert s["DTOUT"] == pytest.approx(2.0)
        assert s["DEBUG"] is True
        assert s["RESTART"] == 3

    def test_chemistry_defaults_filled_in(self):
        s = load_settings([])
        assert s["NCHEM"] == 10
        assert s["LINEAR_SOLVER"] == "dense"
        assert s["RATE_TABLE_FILE"] == "cvklu_tables.h5"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_settings(["--config", str(tmp_path/"absent.json")])

    def test_unparsable_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="could not parse"):
            load_settings(["--config", write_config(tmp_path, "{ NX: ")])

    def test_top_level_must_be_object(self, tmp_path):
        with pytest.raises(ConfigurationError, match="object"):
            load_settings(["--config", write_config(tmp_path, "[1, 2]")])


class TestValidation:
    @pytest.mark.parametrize("extra,match", [
        ("NCHEM: 5", "NCHEM"),
        ("NCHEM: 0, LINEAR_SOLVER: 'dense'", "LINEAR_SOLVER"),
        ("NCHEM: 10, LINEAR_SOLVER: 'cg'", "LINEAR_SOLVER"),
        ("FIXEDSTEP: 1", "HMAX"),
        ("FIXEDSTEP: 2, HMAX: 0.1, HTRANS: 0.5", "HTRANS"),
        ("CFL: 1.5", "CFL"),
        ("TF: -1.0", "TF"),
        ("NPX: 2", "NPX"),
        ("TEMP_ITERS: 0", "TEMP_ITERS"),
        ("FLUX: 'roe'", "FLUX"),
    ])
    def test_rejected(self, tmp_path, extra, match):
        path = write_config(tmp_path, "{ TF: 1.0, NOUT: 2, %s }" % extra)
        with pytest.raises(ConfigurationError, match=match):
            load_settings(["--config", path])

    def test_transient_step_promotes_fixed_mode(self, tmp_path):
        path = write_config(tmp_path, "{ TF: 1.0, NOUT: 2, FIXEDSTEP: 1, HMAX: 0.1, HTRANS: 0.01 }")
        assert load_settings(["--config", path])["FIXEDSTEP"] == 2


class TestCollective:
    def test_every_rank_sees_root_settings(self, tmp_path):
        path = write_config(tmp_path)
        results = run_ranks(3, lambda c: load_settings_collective(c, ["--config", path]))
        assert all(r == results[0] for r in results)

    def test_bad_config_fails_on_every_rank(self, tmp_path):
        path = write_config(tmp_path, "{ NCHEM: 3 }")

        def work(c):
            with pytest.raises(ConfigurationError, match="NCHEM"):
                load_settings_collective(c, ["--config", path])
            return True

        assert run_ranks(2, work) == [True, True]


class TestBackend:
    def test_numpy_spellings(self):
        import numpy as np

        assert get_backend(None) == (np, "numpy")
        assert get_backend("NumPy") == (np, "numpy")

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError, match="BACKEND"):
            get_backend("fortran")

    def test_to_numpy_passthrough(self):
        import numpy as np

        arr = np.arange(3.0)
        assert to_numpy(arr) is arr
        np.testing.assert_array_equal(to_numpy([1.0, 2.0]), [1.0, 2.0])
