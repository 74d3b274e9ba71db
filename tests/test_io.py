"""Tests for metaepi.io — `.dat` input files."""

import numpy as np
import pytest

from metaepi.errors import ConfigError
from metaepi.io import load_inputs, read_dat, read_dat_dir
from metaepi.models import seir_variant


def _write(path, values):
    path.write_text("\n".join(str(v) for v in values) + "\n")


class TestReadDat:
    def test_vector(self, tmp_path):
        _write(tmp_path / "area.dat", [1.5, 2, 3])
        np.testing.assert_array_equal(read_dat(tmp_path / "area.dat"), [1.5, 2.0, 3.0])

    def test_matrix_is_column_major(self, tmp_path):
        (tmp_path / "dist_raw.dat").write_text("1 2\n3 4\n")
        m = read_dat(tmp_path / "dist_raw.dat")
        np.testing.assert_array_equal(m, [[1, 3], [2, 4]])

    def test_forced_vector(self, tmp_path):
        _write(tmp_path / "dist.dat", [0, 1, 1, 0])
        assert read_dat(tmp_path / "dist.dat", matrix=False).shape == (4,)

    def test_non_square(self, tmp_path):
        _write(tmp_path / "dist.dat", [0, 1, 2])
        with pytest.raises(ConfigError, match="square"):
            read_dat(tmp_path / "dist.dat")

    def test_read_dir(self, tmp_path):
        _write(tmp_path / "area.dat", [1, 2])
        _write(tmp_path / "S.dat", [10, 20])
        data = read_dat_dir(tmp_path)
        assert set(data) == {'area', 'S'}

    def test_missing_dir(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_dat_dir(tmp_path / "nope")


class TestLoadInputs:
    def _inputs(self, tmp_path):
        _write(tmp_path / "dist.dat", [0, 3, 3, 0])
        _write(tmp_path / "area.dat", [1.0, 2.0])
        _write(tmp_path / "S.dat", [990, 500])
        _write(tmp_path / "I.dat", [10, 0])
        return tmp_path

    def test_load(self, tmp_path):
        d, a, state = load_inputs(self._inputs(tmp_path), seir_variant())
        assert d.shape == (2, 2)
        np.testing.assert_array_equal(a, [1.0, 2.0])
        assert state.dtype == np.int64
        np.testing.assert_array_equal(state, [[990, 0, 10, 0], [500, 0, 0, 0]])

    def test_missing_distances(self, tmp_path):
        self._inputs(tmp_path)
        (tmp_path / "dist.dat").unlink()
        with pytest.raises(ConfigError, match="dist.dat"):
            load_inputs(tmp_path, seir_variant())

    def test_no_compartments(self, tmp_path):
        self._inputs(tmp_path)
        (tmp_path / "S.dat").unlink()
        (tmp_path / "I.dat").unlink()
        with pytest.raises(ConfigError, match="no initial compartment"):
            load_inputs(tmp_path, seir_variant())

    def test_wrong_length(self, tmp_path):
        self._inputs(tmp_path)
        _write(tmp_path / "E.dat", [1, 2, 3])
        with pytest.raises(ConfigError, match="E.dat"):
            load_inputs(tmp_path, seir_variant())

    def test_fractional_counts(self, tmp_path):
        self._inputs(tmp_path)
        _write(tmp_path / "R.dat", [0.5, 0])
        with pytest.raises(ConfigError, match="non-integer"):
            load_inputs(tmp_path, seir_variant())
