import pytest
from pydantic import ValidationError

from noisemap.errors import ConfigurationError
from noisemap.model.entities import FREQ_BANDS
from noisemap.model.settings import ROSE_SECTORS, PropagationSettings, build_settings


def test_defaults():
    settings = PropagationSettings()
    assert settings.max_src_dist == 250.0
    assert settings.reflection_order == 0
    assert settings.favorable_rose == (0.5,) * ROSE_SECTORS
    assert settings.band_count == len(FREQ_BANDS) == 18
    assert list(settings.freqs) == FREQ_BANDS
    assert settings.noise_floor is None


def test_settings_are_frozen():
    settings = PropagationSettings()
    with pytest.raises(ValidationError):
        settings.max_src_dist = 10.0


@pytest.mark.parametrize(
    "values",
    [
        {"favorable_rose": (0.5,) * 8},
        {"favorable_rose": (1.5,) * ROSE_SECTORS},
        {"max_src_dist": 0.5, "min_rec_dist": 1.0},
        {"reflection_order": -1},
        {"wall_alpha": 2.0},
        {"grid_dim": 0},
        {"frequencies": ()},
        {"frequencies": (500, 250)},
    ],
)
def test_invalid_settings(values):
    with pytest.raises(ConfigurationError):
        build_settings(**values)


def test_configuration_error_names_the_field():
    with pytest.raises(ConfigurationError) as err:
        build_settings(grid_dim=0)
    assert "grid_dim" in str(err.value)
    assert isinstance(err.value, ValueError)


def test_custom_bands():
    settings = build_settings(frequencies=(125, 250, 500, 1000))
    assert settings.band_count == 4
