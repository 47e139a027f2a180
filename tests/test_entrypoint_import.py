"""Ensure that the mysql_entrypoint package is importable and exposes the public API."""


def test_can_import_entrypoint() -> None:
    import importlib

    mod = importlib.import_module("mysql_entrypoint")

    # A subset of the API should be present.
    for name in [
        "file_env",
        "gather_env",
        "verify_minimum_env",
        "compute_directories",
        "ensure_directories",
        "TemporaryServer",
        "SqlSession",
        "process_init_files",
        "setup_database",
        "main",
    ]:
        assert hasattr(mod, name)


def test_configuration_error_is_shared_with_tool_module() -> None:
    import mysql_entrypoint
    from tools.src import mysqld_config

    assert mysql_entrypoint.ConfigurationError is mysqld_config.ConfigurationError
    assert issubclass(mysql_entrypoint.PolicyError, RuntimeError)
