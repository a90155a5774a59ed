import pytest

from config import SfMConfig
from image_formation import make_scene, write_observations


@pytest.fixture
def cfg(tmp_path) -> SfMConfig:
    return SfMConfig(
        input_pattern=str(tmp_path / "image_formation%d.xyz"),
        num_views=5,
        num_threads=1,
        progress_to_stdout=False,
        output_dir=tmp_path / "out",
    )


@pytest.fixture
def K(cfg):
    return cfg.intrinsics


@pytest.fixture
def scene(cfg):
    """Noiseless box scene; camera 0 at the origin."""
    return make_scene(cfg.num_views, cfg.intrinsics)


@pytest.fixture
def observation_files(cfg, scene):
    write_observations(cfg.input_pattern, scene.observations)
    return cfg.input_pattern
