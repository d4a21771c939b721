"""
Microsoft Sentinel enablement on a Log Analytics workspace.

Sentinel resources are extension resources of the workspace under the
Microsoft.SecurityInsights namespace. They are written with `az rest` so the
sentinel CLI extension is not required. The same property bodies are reused by
the ARM template builder.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from deployment.azure.utils.az_cli import (
    AzCmd,
    AzureCliClient,
    ResourceNotFoundError,
    get_az_client,
)

logger = logging.getLogger(__name__)

ARM_ENDPOINT = "https://management.azure.com"
SECURITY_INSIGHTS_API_VERSION = "2023-02-01"

DEFENDER_CONNECTOR_NAME = "defender-for-cloud-alerts"
THREAT_INTEL_CONNECTOR_NAME = "threat-intelligence-indicators"
EXAMPLE_ALERT_RULE_NAME = "suspicious-resource-deployments"

# Starter detection; tune the threshold before relying on it in production
SUSPICIOUS_DEPLOYMENTS_QUERY = """AzureActivity
| where OperationNameValue has_any ("MICROSOFT.RESOURCES/DEPLOYMENTS/WRITE", "MICROSOFT.COMPUTE/VIRTUALMACHINES/WRITE")
| where ActivityStatusValue == "Success"
| summarize DeploymentCount = count(), Resources = make_set(_ResourceId, 20) by Caller, CallerIpAddress, bin(TimeGenerated, 1h)
| where DeploymentCount > 10"""


def onboarding_properties() -> Dict[str, Any]:
    return {"customerManagedKey": False}


def data_connector_definitions(subscription_id: str, tenant_id: str) -> List[Dict[str, Any]]:
    """Default connectors: Defender for Cloud alerts and Threat Intelligence indicators."""
    return [
        {
            "name": DEFENDER_CONNECTOR_NAME,
            "kind": "AzureSecurityCenter",
            "properties": {
                "subscriptionId": subscription_id,
                "dataTypes": {"alerts": {"state": "Enabled"}},
            },
        },
        {
            "name": THREAT_INTEL_CONNECTOR_NAME,
            "kind": "ThreatIntelligence",
            "properties": {
                "tenantId": tenant_id,
                "dataTypes": {"indicators": {"state": "Enabled"}},
            },
        },
    ]


def example_alert_rule() -> Dict[str, Any]:
    """Scheduled analytics rule for an unusual burst of resource deployments."""
    return {
        "name": EXAMPLE_ALERT_RULE_NAME,
        "kind": "Scheduled",
        "properties": {
            "displayName": "Suspicious number of resource creation or deployment activities",
            "description": "Identifies a caller performing more than ten successful deployments within an hour.",
            "severity": "Medium",
            "enabled": True,
            "query": SUSPICIOUS_DEPLOYMENTS_QUERY,
            "queryFrequency": "PT1H",
            "queryPeriod": "PT1H",
            "triggerOperator": "GreaterThan",
            "triggerThreshold": 0,
            "suppressionDuration": "PT5H",
            "suppressionEnabled": False,
            "tactics": ["Impact"],
            "incidentConfiguration": {
                "createIncident": True,
                "groupingConfiguration": {
                    "enabled": False,
                    "reopenClosedIncident": False,
                    "lookbackDuration": "PT5H",
                    "matchingMethod": "AllEntities",
                },
            },
        },
    }


class SentinelManager:
    """Onboards Sentinel and attaches connectors and rules to a workspace."""

    def __init__(self, az: Optional[AzureCliClient] = None,
                 api_version: str = SECURITY_INSIGHTS_API_VERSION):
        self.az = az or get_az_client()
        self.api_version = api_version

    def resource_url(self, workspace_id: str, collection: str, name: str) -> str:
        return (
            f"{ARM_ENDPOINT}{workspace_id}/providers/Microsoft.SecurityInsights/"
            f"{collection}/{name}?api-version={self.api_version}"
        )

    def _put(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self.az.execute_json(
            AzCmd("rest", "")
            .param("--method", "put")
            .param("--url", url)
            .param("--body", json.dumps(body))
        )

    def onboard(self, workspace_id: str) -> Dict[str, Any]:
        """Enable Sentinel by creating the workspace's default onboarding state."""
        result = self._put(
            self.resource_url(workspace_id, "onboardingStates", "default"),
            {"properties": onboarding_properties()},
        )
        logger.info("Microsoft Sentinel enabled on workspace")
        return result

    def get_onboarding_state(self, workspace_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self.az.execute_json(
                AzCmd("rest", "")
                .param("--method", "get")
                .param("--url", self.resource_url(workspace_id, "onboardingStates", "default"))
            )
        except ResourceNotFoundError:
            return None

    def create_data_connectors(self, workspace_id: str, subscription_id: str,
                               tenant_id: str) -> List[str]:
        created = []
        for connector in data_connector_definitions(subscription_id, tenant_id):
            self._put(
                self.resource_url(workspace_id, "dataConnectors", connector["name"]),
                {"kind": connector["kind"], "properties": connector["properties"]},
            )
            logger.info(f"Data connector configured: {connector['kind']}")
            created.append(connector["name"])
        return created

    def create_example_alert_rule(self, workspace_id: str) -> str:
        rule = example_alert_rule()
        self._put(
            self.resource_url(workspace_id, "alertRules", rule["name"]),
            {"kind": rule["kind"], "properties": rule["properties"]},
        )
        logger.info(f"Analytics rule created: {rule['properties']['displayName']}")
        return rule["name"]

    def delete_command(self, workspace_id: str, collection: str, name: str) -> List[str]:
        return (
            AzCmd("rest", "")
            .param("--method", "delete")
            .param("--url", self.resource_url(workspace_id, collection, name))
            .cmd
        )
