"""Azure CLI login and subscription selection."""
import logging
from typing import Any, Dict, List, Optional

from deployment.azure.utils.az_cli import (
    AzCmd,
    AzCliError,
    AzureCliClient,
    NotLoggedInError,
    get_az_client,
)
from sentinel_deploy.settings import get_settings

logger = logging.getLogger(__name__)


class SubscriptionManager:
    """Authentication checks and subscription selection for the Azure CLI."""

    def __init__(self, az: Optional[AzureCliClient] = None):
        self.az = az or get_az_client()
        self.settings = get_settings()

    def ensure_logged_in(self) -> Dict[str, Any]:
        """Return the current account or raise NotLoggedInError."""
        if not self.az.succeeds(AzCmd("account", "show")):
            raise NotLoggedInError("Please log in to Azure CLI first: az login")
        logger.info("Azure CLI authenticated")
        return self.current()

    def current(self) -> Dict[str, Any]:
        """Name, id and tenant of the active subscription."""
        return self.az.execute_json(
            AzCmd("account", "show").query("{name:name, id:id, tenantId:tenantId}")
        )

    def list_enabled(self) -> List[Dict[str, Any]]:
        subscriptions = self.az.execute_json(
            AzCmd("account", "list").query("[?state=='Enabled']")
        )
        return subscriptions or []

    def set_active(self, subscription_id: str) -> Dict[str, Any]:
        """Switch the CLI to a subscription and return its details."""
        logger.info(f"Setting active subscription to: {subscription_id}")
        try:
            self.az.execute(AzCmd("account", "set").param("--subscription", subscription_id))
        except AzCliError as e:
            raise AzCliError(
                f"Failed to set subscription {subscription_id}",
                command=e.command, returncode=e.returncode, stderr=e.stderr
            ) from e
        current = self.current()
        logger.info(f"Successfully switched to subscription: {current.get('name')}")
        return current

    def find_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        for subscription in self.list_enabled():
            if subscription.get("name") == name:
                return subscription
        return None

    def create_alias(self, alias_name: str, display_name: str,
                     billing_scope: Optional[str] = None,
                     workload: str = "Production") -> str:
        """Create a subscription through an alias and return its id."""
        billing_scope = billing_scope or self.settings.billing_scope
        if not billing_scope:
            raise ValueError("A billing scope is required to create a subscription")

        logger.info(f"Creating subscription '{display_name}' (alias {alias_name})")
        alias = self.az.execute_json(
            AzCmd("account", "alias create")
            .param("--name", alias_name)
            .param("--billing-scope", billing_scope)
            .param("--display-name", display_name)
            .param("--workload", workload)
        )
        subscription_id = alias["properties"]["subscriptionId"]
        logger.info(f"Created subscription {display_name}: {subscription_id}")
        return subscription_id

    def resolve(self, subscription_id: Optional[str] = None,
                subscription_name: Optional[str] = None,
                create_if_missing: bool = False) -> Dict[str, Any]:
        """Activate the requested subscription, falling back to the current one.

        An explicit id wins. A name is looked up among enabled subscriptions and,
        when create_if_missing is set and a billing scope is configured, created.
        """
        if subscription_id:
            return self.set_active(subscription_id)

        if subscription_name:
            found = self.find_by_name(subscription_name)
            if found:
                return self.set_active(found["id"])
            if create_if_missing and self.settings.billing_scope:
                alias_name = subscription_name.lower().replace(" ", "-")
                new_id = self.create_alias(alias_name, subscription_name)
                return self.set_active(new_id)
            logger.info(
                f"Subscription '{subscription_name}' not found; using it as a reference name only"
            )

        return self.current()


def choose_subscription(subscriptions: List[Dict[str, Any]],
                        selection: Optional[str]) -> Optional[Dict[str, Any]]:
    """Pick from a numbered subscription list.

    An empty selection means keep the current subscription and returns None.
    Anything that is not a number in range raises ValueError.
    """
    if selection is None or not str(selection).strip():
        return None
    text = str(selection).strip()
    if not text.isdigit() or not 1 <= int(text) <= len(subscriptions):
        raise ValueError("Invalid selection. Please run the command again.")
    return subscriptions[int(text) - 1]
