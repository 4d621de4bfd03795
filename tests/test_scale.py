import pytest

from opstorm.errors import ConfigurationError
from opstorm.scale import DEFAULT_VOLUME_OPS_SCALE, SCALE_ENV_VAR, resolve_scale


class TestResolveScale:
    def test_defaults_to_thirty_when_unset(self):
        assert resolve_scale(environ={}) == DEFAULT_VOLUME_OPS_SCALE == 30

    def test_reads_environment_variable(self):
        assert resolve_scale(environ={SCALE_ENV_VAR: "3"}) == 3

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv(SCALE_ENV_VAR, "7")
        assert resolve_scale() == 7

    def test_explicit_override_beats_environment(self):
        assert resolve_scale(5, environ={SCALE_ENV_VAR: "3"}) == 5

    def test_empty_value_uses_default(self):
        assert resolve_scale(environ={SCALE_ENV_VAR: "  "}) == 30

    def test_whitespace_is_stripped(self):
        assert resolve_scale(" 12 ") == 12

    @pytest.mark.parametrize("value", ["abc", "3.5", "1e2"])
    def test_non_integer_is_rejected(self, value):
        with pytest.raises(ConfigurationError, match="must be an integer"):
            resolve_scale(value)

    @pytest.mark.parametrize("value", ["0", "-4", 0])
    def test_non_positive_is_rejected(self, value):
        with pytest.raises(ConfigurationError, match="must be positive"):
            resolve_scale(value)

    def test_blank_override_falls_back_to_environment(self):
        assert resolve_scale("", environ={SCALE_ENV_VAR: "4"}) == 4
        assert resolve_scale("  ", environ={}) == 30
