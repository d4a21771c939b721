import pytest

from deployment.azure.utils.az_cli import (
    AuthorizationError,
    AzCliError,
    AzCliNotFoundError,
    AzCmd,
    AzureCliClient,
    NotLoggedInError,
    ResourceNotFoundError,
    ThrottledError,
    TokenExpiredError,
    classify_failure,
    get_az_client,
    try_regex_access_error,
)

ACCESS_DENIED = (
    "ERROR: (AuthorizationFailed) The client 'user@example.com' with object id "
    "'00000000-0000-0000-0000-000000000000' does not have authorization to perform action "
    "'Microsoft.Resources/subscriptions/resourcegroups/write' over scope "
    "'/subscriptions/00000000-0000-0000-0000-000000000001' or the scope is invalid."
)


def test_az_cmd_builds_argument_list():
    cmd = (
        AzCmd("monitor", "log-analytics workspace create")
        .param("--retention-time", 90)
        .param_list("--tags", ["a=b", "c=d"])
        .flag("--yes")
        .query("id")
    )
    assert cmd.cmd == [
        "monitor", "log-analytics", "workspace", "create",
        "--retention-time", "90", "--tags", "a=b", "c=d", "--yes", "--query", "id",
    ]
    assert str(cmd).startswith("az monitor log-analytics")


def test_az_cmd_with_empty_action():
    assert AzCmd("rest", "").cmd == ["rest"]


def test_access_error_message_is_extracted():
    message = try_regex_access_error(ACCESS_DENIED)
    assert message == (
        "Insufficient permissions for user@example.com to perform "
        "Microsoft.Resources/subscriptions/resourcegroups/write on "
        "/subscriptions/00000000-0000-0000-0000-000000000001"
    )
    assert try_regex_access_error("something else") is None


@pytest.mark.parametrize("stderr, expected", [
    ("ERROR: (TooManyRequests) slow down", ThrottledError),
    ("ResourceCollectionRequestsThrottled", ThrottledError),
    ("AADSTS700082: The refresh token has expired", TokenExpiredError),
    (ACCESS_DENIED, AuthorizationError),
    ("ERROR: Please run 'az login' to setup account.", NotLoggedInError),
    ("ERROR: (ResourceGroupNotFound) Resource group 'x' could not be found.", ResourceNotFoundError),
    ("ERROR: something broke", AzCliError),
])
def test_classify_failure(stderr, expected):
    error = classify_failure(AzCmd("group", "show"), 1, stderr)
    assert type(error) is expected
    assert error.returncode == 1
    assert error.command == ["group", "show"]
    assert error.stderr == stderr


def test_execute_returns_stdout(fake_az):
    fake_az.add("group exists", "true\n")
    client = AzureCliClient(cli_path="az", runner=fake_az)

    assert client.execute_tsv(AzCmd("group", "exists").param("--name", "rg")) == "true"
    assert fake_az.calls == [["group", "exists", "--name", "rg", "--output", "tsv"]]


def test_execute_json_parses_and_handles_empty_output(fake_az):
    fake_az.add("account show", {"id": "abc"})
    fake_az.add("provider register", "")
    client = AzureCliClient(cli_path="az", runner=fake_az)

    assert client.execute_json(AzCmd("account", "show")) == {"id": "abc"}
    assert client.execute_json(AzCmd("provider", "register")) is None
    assert fake_az.calls[0][-2:] == ["--output", "json"]


def test_execute_raises_classified_error(fake_az):
    fake_az.fail("group show", "ERROR: (ResourceGroupNotFound) missing")
    client = AzureCliClient(cli_path="az", runner=fake_az)

    with pytest.raises(ResourceNotFoundError):
        client.execute(AzCmd("group", "show").param("--name", "rg"))


def test_throttled_calls_are_retried(fake_az):
    fake_az.add("account show", {"id": "abc"})
    fake_az.fail("account show", "TooManyRequests", times=2)
    client = AzureCliClient(cli_path="az", max_retries=3, runner=fake_az)

    assert client.execute_json(AzCmd("account", "show")) == {"id": "abc"}
    assert len(fake_az.calls) == 3


def test_throttling_gives_up_after_max_retries(fake_az):
    fake_az.fail("account show", "TooManyRequests")
    client = AzureCliClient(cli_path="az", max_retries=2, runner=fake_az)

    with pytest.raises(ThrottledError):
        client.execute(AzCmd("account", "show"))
    assert len(fake_az.calls) == 2


def test_non_throttling_errors_are_not_retried(fake_az):
    fake_az.fail("group create", "ERROR: boom")
    client = AzureCliClient(cli_path="az", max_retries=5, runner=fake_az)

    with pytest.raises(AzCliError):
        client.execute(AzCmd("group", "create"))
    assert len(fake_az.calls) == 1


def test_missing_cli_binary():
    def runner(*args, **kwargs):
        raise FileNotFoundError("az")

    client = AzureCliClient(cli_path="/nope/az", runner=runner)
    with pytest.raises(AzCliNotFoundError, match="AZURE_CLI_PATH"):
        client.execute(AzCmd("account", "show"))
    with pytest.raises(AzCliNotFoundError):
        client.succeeds(AzCmd("account", "show"))


def test_succeeds_reports_exit_status(fake_az):
    fake_az.fail("account show", "Please run 'az login'")
    client = AzureCliClient(cli_path="az", runner=fake_az)
    assert client.succeeds(AzCmd("account", "show")) is False

    fake_az.add("account show", {"id": "abc"})
    assert client.succeeds(AzCmd("account", "show")) is True


def test_client_defaults_come_from_settings(monkeypatch):
    from sentinel_deploy.settings import get_settings

    monkeypatch.setenv("AZURE_CLI_PATH", "/opt/az/bin/az")
    get_settings.cache_clear()

    client = AzureCliClient()
    assert client.cli_path == "/opt/az/bin/az"
    assert client.max_retries == 3


def test_shared_client_is_reused(az_client):
    assert get_az_client() is az_client


def test_throttling_retries_are_logged_with_the_command(fake_az, caplog):
    fake_az.add("group show", {"name": "rg"})
    fake_az.fail("group show", "ERROR: TooManyRequests", times=1)
    client = AzureCliClient(cli_path="az", max_retries=3, runner=fake_az)

    client.execute_json(AzCmd("group", "show").param("--name", "rg"))

    assert "az group show --name rg" in caplog.text
    assert "attempt 1/3" in caplog.text
