"""Test that all public modules can be imported."""

import pytest


class TestImports:
    """Test basic package imports."""

    def test_import_rumflow(self):
        """Test main package import."""
        import rumflow

        assert hasattr(rumflow, "__version__")

    def test_import_config(self):
        """Test config module import."""
        from rumflow.config import JobConfig

        assert JobConfig is not None

    def test_import_schema(self):
        """Test schema imports."""
        from rumflow.config.schema import (
            BlatConfig,
            IndexConfig,
            JobConfig,
            PlatformName,
            SlurmSettings,
        )

        assert BlatConfig is not None
        assert IndexConfig is not None
        assert JobConfig is not None
        assert PlatformName is not None
        assert SlurmSettings is not None

    def test_lazy_top_level_names(self):
        """Public classes are reachable from the package root."""
        import rumflow
        from rumflow.orchestrator import ChunkOrchestrator
        from rumflow.resources import ResourceEstimator

        assert rumflow.ChunkOrchestrator is ChunkOrchestrator
        assert rumflow.ResourceEstimator is ResourceEstimator
        for name in rumflow.__all__:
            assert getattr(rumflow, name) is not None

    def test_unknown_attribute(self):
        import rumflow

        with pytest.raises(AttributeError):
            rumflow.NotAThing  # noqa: B018

    def test_platforms_registered(self):
        from rumflow.config.schema import PlatformName
        from rumflow.platform import PLATFORMS, ClusterPlatform, LocalPlatform

        assert PLATFORMS[PlatformName.LOCAL] is LocalPlatform
        assert PLATFORMS[PlatformName.CLUSTER] is ClusterPlatform

    def test_version_format(self):
        """Test version string format."""
        import rumflow

        version = rumflow.__version__
        # Should be semver format: X.Y.Z
        parts = version.split(".")
        assert len(parts) >= 2, f"Version {version} should have at least major.minor"
        assert parts[0].isdigit(), f"Major version should be numeric: {parts[0]}"
        assert parts[1].isdigit(), f"Minor version should be numeric: {parts[1]}"


class TestConfigValidation:
    """Test configuration validation."""

    def test_num_chunks_must_be_positive(self):
        """Test JobConfig rejects a zero chunk count."""
        from pydantic import ValidationError

        from rumflow.config.schema import JobConfig

        with pytest.raises(ValidationError):
            JobConfig(num_chunks=0)

        config = JobConfig(num_chunks=4)
        assert config.effective_num_chunks == 4

    def test_blat_defaults(self):
        """Test BlatConfig defaults."""
        from rumflow.config.schema import BlatConfig

        config = BlatConfig()
        assert config.min_identity == 93
        assert config.tile_size == 12
