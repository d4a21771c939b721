"""
Resource provider registration.

Registration requests are sent without waiting; a fixed-count poll loop then
checks each namespace until it reports Registered.
"""

import logging
import time
from typing import Dict, List, Optional

from deployment.azure.utils.az_cli import AzCmd, AzCliError, AzureCliClient, get_az_client
from sentinel_deploy.settings import get_settings
from sentinel_deploy.utils.decorators import log_execution_time

logger = logging.getLogger(__name__)

REGISTERED = "Registered"


class ProviderRegistrationError(RuntimeError):
    """One or more providers did not reach Registered within the poll budget."""

    def __init__(self, pending: Dict[str, str]):
        self.pending = pending
        details = ", ".join(f"{ns} ({state})" for ns, state in pending.items())
        super().__init__(f"Resource providers not registered: {details}")


class ProviderRegistrar:
    """Registers resource provider namespaces on the active subscription."""

    def __init__(self, az: Optional[AzureCliClient] = None,
                 providers: Optional[List[str]] = None,
                 poll_attempts: Optional[int] = None,
                 poll_interval: Optional[float] = None,
                 sleep=time.sleep):
        settings = get_settings()
        self.az = az or get_az_client()
        self.providers = list(providers or settings.required_providers)
        self.poll_attempts = poll_attempts if poll_attempts is not None else settings.provider_poll_attempts
        self.poll_interval = poll_interval if poll_interval is not None else settings.provider_poll_interval
        self.sleep = sleep

    def get_state(self, namespace: str) -> str:
        """Registration state string as reported by the CLI."""
        try:
            return self.az.execute_tsv(
                AzCmd("provider", "show")
                .param("--namespace", namespace)
                .query("registrationState")
            ) or "Unknown"
        except AzCliError as e:
            logger.warning(f"Could not read registration state for {namespace}: {e}")
            return "Unknown"

    def get_states(self) -> Dict[str, str]:
        return {namespace: self.get_state(namespace) for namespace in self.providers}

    def request_registration(self) -> Dict[str, bool]:
        """Fire registration for every provider; returns which requests were accepted."""
        accepted = {}
        for namespace in self.providers:
            logger.info(f"Registering {namespace}...")
            try:
                self.az.execute(
                    AzCmd("provider", "register")
                    .param("--namespace", namespace)
                    .output("none")
                )
                accepted[namespace] = True
                logger.info(f"{namespace} registration initiated")
            except AzCliError as e:
                # Registration of an already-registered namespace can be refused
                accepted[namespace] = False
                logger.warning(f"Failed to register {namespace} (may already be registered): {e}")
        return accepted

    def wait_until_registered(self) -> Dict[str, str]:
        """Poll until every provider reports Registered or attempts run out."""
        pending = {namespace: "Unknown" for namespace in self.providers}

        for attempt in range(1, self.poll_attempts + 1):
            for namespace in list(pending):
                state = self.get_state(namespace)
                if state == REGISTERED:
                    logger.info(f"{namespace} is {REGISTERED}")
                    del pending[namespace]
                else:
                    pending[namespace] = state

            if not pending:
                return {namespace: REGISTERED for namespace in self.providers}

            logger.info(
                f"Waiting for provider registration ({attempt}/{self.poll_attempts}): "
                f"{', '.join(f'{ns}={state}' for ns, state in pending.items())}"
            )
            if attempt < self.poll_attempts:
                self.sleep(self.poll_interval)

        raise ProviderRegistrationError(pending)

    @log_execution_time
    def register_all(self, wait: bool = True) -> Dict[str, str]:
        """Register every provider and, unless wait is False, poll until done."""
        logger.info("Registering Azure resource providers (this may take a few minutes)...")
        self.request_registration()
        if not wait:
            return self.get_states()
        states = self.wait_until_registered()
        logger.info("Resource provider registration completed")
        return states
