pytest_plugins = ["tests.fixtures.az_fixtures"]
