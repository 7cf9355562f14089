from importlib.metadata import PackageNotFoundError, version

import subagent_manager


def test_version_matches_installed_package_metadata() -> None:
    try:
        installed_version = version("subagent-manager")
    except PackageNotFoundError:
        assert subagent_manager.__version__ == "0.0.0"
    else:
        assert subagent_manager.__version__ == installed_version
