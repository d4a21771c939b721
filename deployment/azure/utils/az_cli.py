"""Azure CLI command building, execution and error classification."""
import json
import logging
import subprocess
from re import search
from typing import Any, Callable, List, Optional

from sentinel_deploy.settings import get_settings
from sentinel_deploy.utils.decorators import retry

logger = logging.getLogger(__name__)

AUTHORIZATION_ERROR = "AuthorizationFailed"
REFRESH_TOKEN_EXPIRED_ERROR = "AADSTS700082"
AZURE_THROTTLING_ERROR = "TooManyRequests"
RESOURCE_COLLECTION_THROTTLING_ERROR = "ResourceCollectionRequestsThrottled"
NOT_LOGGED_IN_ERROR = "az login"
NOT_FOUND_MARKERS = ("ResourceGroupNotFound", "ResourceNotFound", "(NotFound)", "could not be found")

RETRY_DELAY_SECONDS = 2.0
MAX_RETRY_DELAY_SECONDS = 30.0


class AzCliError(RuntimeError):
    """An Azure CLI invocation exited non-zero."""

    def __init__(self, message: str, command: Optional[List[str]] = None,
                 returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.command = command or []
        self.returncode = returncode
        self.stderr = stderr


class AzCliNotFoundError(AzCliError):
    pass


class NotLoggedInError(AzCliError):
    pass


class AuthorizationError(AzCliError):
    pass


class TokenExpiredError(AzCliError):
    pass


class ThrottledError(AzCliError):
    pass


class ResourceNotFoundError(AzCliError):
    pass


class AzCmd:
    """Builder for Azure CLI commands."""

    def __init__(self, service: str, action: str):
        """Initialize with service and action (e.g., 'group', 'create')."""
        self.cmd = [service] + action.split()

    def param(self, key: str, value: Any) -> "AzCmd":
        """Adds a key-value pair parameter"""
        self.cmd.extend([key, str(value)])
        return self

    def param_list(self, key: str, values: List[str]) -> "AzCmd":
        """Adds a list of parameters with the same key"""
        self.cmd.append(key)
        self.cmd.extend(str(v) for v in values)
        return self

    def flag(self, flag: str) -> "AzCmd":
        """Adds a flag to the command"""
        self.cmd.append(flag)
        return self

    def query(self, expression: str) -> "AzCmd":
        return self.param("--query", expression)

    def output(self, fmt: str) -> "AzCmd":
        return self.param("--output", fmt)

    def has(self, key: str) -> bool:
        return key in self.cmd

    def __str__(self) -> str:
        return "az " + " ".join(self.cmd)


def try_regex_access_error(stderr: str) -> Optional[str]:
    # Sample:
    # (AuthorizationFailed) The client 'user@example.com' with object id '00000000-0000-0000-0000-000000000000'
    # does not have authorization to perform action 'Microsoft.Resources/subscriptions/resourcegroups/write'
    # over scope '/subscriptions/00000000-0000-0000-0000-000000000000' or the scope is invalid.
    client_match = search(r"client '([^']*)'", stderr)
    action_match = search(r"action '([^']*)'", stderr)
    scope_match = search(r"scope '([^']*)'", stderr)

    if action_match and scope_match and client_match:
        return (
            f"Insufficient permissions for {client_match.group(1)} to perform "
            f"{action_match.group(1)} on {scope_match.group(1)}"
        )
    return None


def classify_failure(az_cmd: AzCmd, returncode: int, stderr: str) -> AzCliError:
    """Map a failed invocation's stderr onto the error taxonomy."""
    kwargs = {"command": list(az_cmd.cmd), "returncode": returncode, "stderr": stderr}

    if AZURE_THROTTLING_ERROR in stderr or RESOURCE_COLLECTION_THROTTLING_ERROR in stderr:
        return ThrottledError(f"Azure throttled '{az_cmd}'", **kwargs)
    if REFRESH_TOKEN_EXPIRED_ERROR in stderr:
        return TokenExpiredError(
            f"Auth token is expired. Refresh token before running '{az_cmd}'", **kwargs
        )
    if AUTHORIZATION_ERROR in stderr:
        message = try_regex_access_error(stderr)
        return AuthorizationError(
            message or f"Insufficient permissions to access resource when executing '{az_cmd}'",
            **kwargs
        )
    if NOT_LOGGED_IN_ERROR in stderr:
        return NotLoggedInError("Please log in to Azure CLI first: az login", **kwargs)
    if any(marker in stderr for marker in NOT_FOUND_MARKERS):
        return ResourceNotFoundError(f"Resource not found for '{az_cmd}'", **kwargs)
    return AzCliError(f"Command failed: {az_cmd}", **kwargs)


class AzureCliClient:
    """Runs Azure CLI commands and returns their output."""

    def __init__(self, cli_path: Optional[str] = None, max_retries: Optional[int] = None,
                 runner: Optional[Callable[..., subprocess.CompletedProcess]] = None):
        settings = get_settings()
        self.cli_path = cli_path or settings.az_cli_path
        self.max_retries = max_retries or settings.az_max_retries
        self.runner = runner or subprocess.run

    def _run_once(self, az_cmd: AzCmd) -> str:
        full_command = [self.cli_path] + az_cmd.cmd
        logger.debug(f"Running: {az_cmd}")
        try:
            result = self.runner(full_command, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise AzCliNotFoundError(
                f"Azure CLI not found at '{self.cli_path}'. Install it or set AZURE_CLI_PATH.",
                command=list(az_cmd.cmd)
            ) from e

        if result.returncode != 0:
            error = classify_failure(az_cmd, result.returncode, result.stderr or "")
            if not isinstance(error, (ThrottledError, ResourceNotFoundError)):
                logger.error(f"Command failed: {az_cmd}")
                logger.error(result.stderr)
            raise error
        return result.stdout or ""

    def execute(self, az_cmd: AzCmd) -> str:
        """Run an Azure CLI command and return stdout or raise an AzCliError."""
        run = retry(
            max_attempts=self.max_retries,
            delay=RETRY_DELAY_SECONDS,
            max_delay=MAX_RETRY_DELAY_SECONDS,
            exceptions=(ThrottledError,),
            logger_name=__name__,
            describe=str,
        )(self._run_once)
        return run(az_cmd)

    def execute_json(self, az_cmd: AzCmd) -> Any:
        """Run a command with JSON output and parse it; empty output yields None."""
        if not az_cmd.has("--output") and not az_cmd.has("-o"):
            az_cmd.output("json")
        output = self.execute(az_cmd).strip()
        if not output:
            return None
        return json.loads(output)

    def execute_tsv(self, az_cmd: AzCmd) -> str:
        if not az_cmd.has("--output") and not az_cmd.has("-o"):
            az_cmd.output("tsv")
        return self.execute(az_cmd).strip()

    def succeeds(self, az_cmd: AzCmd) -> bool:
        """True when the command exits zero; failures are not logged as errors."""
        full_command = [self.cli_path] + az_cmd.cmd
        try:
            result = self.runner(full_command, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise AzCliNotFoundError(
                f"Azure CLI not found at '{self.cli_path}'. Install it or set AZURE_CLI_PATH.",
                command=list(az_cmd.cmd)
            ) from e
        return result.returncode == 0


_client: Optional[AzureCliClient] = None


def get_az_client() -> AzureCliClient:
    """Get the process-wide Azure CLI client."""
    global _client
    if _client is None:
        _client = AzureCliClient()
    return _client


def set_az_client(client: Optional[AzureCliClient]) -> None:
    """Replace the process-wide client (None resets to a fresh default)."""
    global _client
    _client = client
