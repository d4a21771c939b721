"""
ARM template builders for the security monitoring stack.

The subscription-scope template creates the resource group and a nested
resource-group deployment holding the workspace, the Sentinel onboarding
state, default data connectors, an example analytics rule and the resource
group lock. Dependency edges are expressed with dependsOn; optional pieces use
resource conditions driven by boolean parameters.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict

from deployment.azure.infrastructure.sentinel import (
    SECURITY_INSIGHTS_API_VERSION,
    data_connector_definitions,
    example_alert_rule,
    onboarding_properties,
)

logger = logging.getLogger(__name__)

SUBSCRIPTION_SCHEMA = "https://schema.management.azure.com/schemas/2018-05-01/subscriptionDeploymentTemplate.json#"
RESOURCE_GROUP_SCHEMA = "https://schema.management.azure.com/schemas/2019-04-01/deploymentTemplate.json#"
PARAMETERS_SCHEMA = "https://schema.management.azure.com/schemas/2019-04-01/deploymentParameters.json#"

NESTED_DEPLOYMENT_NAME = "sentinel-resources"
WORKSPACE_API_VERSION = "2022-10-01"
RESOURCE_GROUP_API_VERSION = "2021-04-01"
LOCK_API_VERSION = "2020-05-01"

# Parameter names understood by externally maintained templates
BASE_PARAMETER_NAMES = [
    "subscriptionName",
    "resourceGroupName",
    "resourceGroupDescription",
    "logAnalyticsWorkspaceName",
    "location",
    "logAnalyticsSku",
    "dataRetentionDays",
    "enableResourceGroupLock",
    "resourceGroupLockType",
]

WORKSPACE_ID_EXPR = "[resourceId('Microsoft.OperationalInsights/workspaces', parameters('workspaceName'))]"
WORKSPACE_SCOPE_EXPR = "[concat('Microsoft.OperationalInsights/workspaces/', parameters('workspaceName'))]"
ONBOARDING_ID_EXPR = (
    "[extensionResourceId(resourceId('Microsoft.OperationalInsights/workspaces', "
    "parameters('workspaceName')), 'Microsoft.SecurityInsights/onboardingStates', 'default')]"
)


def _parameter(param_type: str, description: str, default: Any = None) -> Dict[str, Any]:
    definition = {"type": param_type, "metadata": {"description": description}}
    if default is not None:
        definition["defaultValue"] = default
    return definition


def _inner_resources() -> list:
    """Resources deployed inside the resource group."""
    sentinel_condition = "[parameters('enableSentinel')]"
    connectors_condition = "[and(parameters('enableSentinel'), parameters('enableDataConnectors'))]"
    alert_rule_condition = "[and(parameters('enableSentinel'), parameters('enableExampleAlertRule'))]"

    resources = [
        {
            "type": "Microsoft.OperationalInsights/workspaces",
            "apiVersion": WORKSPACE_API_VERSION,
            "name": "[parameters('workspaceName')]",
            "location": "[parameters('location')]",
            "tags": "[parameters('tags')]",
            "properties": {
                "sku": {"name": "[parameters('sku')]"},
                "retentionInDays": "[parameters('retentionInDays')]",
                "features": {"enableLogAccessUsingOnlyResourcePermissions": True},
                "workspaceCapping": {"dailyQuotaGb": -1},
                "publicNetworkAccessForIngestion": "Enabled",
                "publicNetworkAccessForQuery": "Enabled",
            },
        },
        {
            "condition": sentinel_condition,
            "type": "Microsoft.SecurityInsights/onboardingStates",
            "apiVersion": SECURITY_INSIGHTS_API_VERSION,
            "scope": WORKSPACE_SCOPE_EXPR,
            "name": "default",
            "dependsOn": [WORKSPACE_ID_EXPR],
            "properties": onboarding_properties(),
        },
    ]

    for connector in data_connector_definitions(
        "[subscription().subscriptionId]", "[subscription().tenantId]"
    ):
        resources.append({
            "condition": connectors_condition,
            "type": "Microsoft.SecurityInsights/dataConnectors",
            "apiVersion": SECURITY_INSIGHTS_API_VERSION,
            "scope": WORKSPACE_SCOPE_EXPR,
            "name": connector["name"],
            "kind": connector["kind"],
            "dependsOn": [ONBOARDING_ID_EXPR],
            "properties": connector["properties"],
        })

    rule = example_alert_rule()
    resources.append({
        "condition": alert_rule_condition,
        "type": "Microsoft.SecurityInsights/alertRules",
        "apiVersion": SECURITY_INSIGHTS_API_VERSION,
        "scope": WORKSPACE_SCOPE_EXPR,
        "name": rule["name"],
        "kind": rule["kind"],
        "dependsOn": [ONBOARDING_ID_EXPR],
        "properties": rule["properties"],
    })

    # Lock goes last so a ReadOnly lock cannot block the writes above
    resources.append({
        "condition": "[parameters('enableLock')]",
        "type": "Microsoft.Authorization/locks",
        "apiVersion": LOCK_API_VERSION,
        "name": "[concat(resourceGroup().name, '-lock')]",
        "dependsOn": [
            WORKSPACE_ID_EXPR,
            ONBOARDING_ID_EXPR,
        ] + [
            "[extensionResourceId(resourceId('Microsoft.OperationalInsights/workspaces', "
            f"parameters('workspaceName')), 'Microsoft.SecurityInsights/dataConnectors', '{c['name']}')]"
            for c in data_connector_definitions("", "")
        ] + [
            "[extensionResourceId(resourceId('Microsoft.OperationalInsights/workspaces', "
            f"parameters('workspaceName')), 'Microsoft.SecurityInsights/alertRules', '{rule['name']}')]"
        ],
        "properties": {
            "level": "[parameters('lockType')]",
            "notes": "Protects security monitoring resources",
        },
    })
    return resources


def build_resource_group_template() -> Dict[str, Any]:
    """Nested template deployed into the resource group."""
    return {
        "$schema": RESOURCE_GROUP_SCHEMA,
        "contentVersion": "1.0.0.0",
        "parameters": {
            "workspaceName": {"type": "string"},
            "location": {"type": "string"},
            "sku": {"type": "string"},
            "retentionInDays": {"type": "int"},
            "enableSentinel": {"type": "bool"},
            "enableDataConnectors": {"type": "bool"},
            "enableExampleAlertRule": {"type": "bool"},
            "enableLock": {"type": "bool"},
            "lockType": {"type": "string"},
            "tags": {"type": "object"},
        },
        "resources": _inner_resources(),
        "outputs": {
            "workspaceId": {
                "type": "string",
                "value": f"[reference({WORKSPACE_ID_EXPR[1:-1]}).customerId]",
            },
            "workspaceResourceId": {
                "type": "string",
                "value": WORKSPACE_ID_EXPR,
            },
        },
    }


def build_subscription_template() -> Dict[str, Any]:
    """Subscription-scope template creating the resource group and its contents."""
    nested_id = (
        "resourceId(subscription().subscriptionId, parameters('resourceGroupName'), "
        f"'Microsoft.Resources/deployments', '{NESTED_DEPLOYMENT_NAME}')"
    )

    return {
        "$schema": SUBSCRIPTION_SCHEMA,
        "contentVersion": "1.0.0.0",
        "parameters": {
            "subscriptionName": _parameter("string", "Name for the subscription reference", ""),
            "resourceGroupName": _parameter("string", "Name of the resource group"),
            "resourceGroupDescription": _parameter("string", "Description of the resource group", ""),
            "logAnalyticsWorkspaceName": _parameter("string", "Name of the Log Analytics workspace"),
            "location": _parameter("string", "Location for resources", "eastus"),
            "logAnalyticsSku": _parameter("string", "Log Analytics pricing tier", "PerGB2018"),
            "dataRetentionDays": _parameter("int", "Data retention in days", 90),
            "enableResourceGroupLock": _parameter("bool", "Apply a lock to the resource group", True),
            "resourceGroupLockType": _parameter("string", "Lock level", "CanNotDelete"),
            "enableSentinel": _parameter("bool", "Enable Microsoft Sentinel on the workspace", True),
            "enableDataConnectors": _parameter("bool", "Attach the default data connectors", True),
            "enableExampleAlertRule": _parameter("bool", "Create the example analytics rule", True),
            "tags": _parameter("object", "Tags applied to the resource group and workspace", {}),
        },
        "variables": {
            "resourceGroupTags": (
                "[union(parameters('tags'), createObject('Description', parameters('resourceGroupDescription'), "
                "'SubscriptionReference', parameters('subscriptionName')))]"
            ),
        },
        "resources": [
            {
                "type": "Microsoft.Resources/resourceGroups",
                "apiVersion": RESOURCE_GROUP_API_VERSION,
                "name": "[parameters('resourceGroupName')]",
                "location": "[parameters('location')]",
                "tags": "[variables('resourceGroupTags')]",
            },
            {
                "type": "Microsoft.Resources/deployments",
                "apiVersion": RESOURCE_GROUP_API_VERSION,
                "name": NESTED_DEPLOYMENT_NAME,
                "resourceGroup": "[parameters('resourceGroupName')]",
                "dependsOn": [
                    "[resourceId('Microsoft.Resources/resourceGroups', parameters('resourceGroupName'))]"
                ],
                "properties": {
                    "mode": "Incremental",
                    "expressionEvaluationOptions": {"scope": "inner"},
                    "template": build_resource_group_template(),
                    "parameters": {
                        "workspaceName": {"value": "[parameters('logAnalyticsWorkspaceName')]"},
                        "location": {"value": "[parameters('location')]"},
                        "sku": {"value": "[parameters('logAnalyticsSku')]"},
                        "retentionInDays": {"value": "[parameters('dataRetentionDays')]"},
                        "enableSentinel": {"value": "[parameters('enableSentinel')]"},
                        "enableDataConnectors": {"value": "[parameters('enableDataConnectors')]"},
                        "enableExampleAlertRule": {"value": "[parameters('enableExampleAlertRule')]"},
                        "enableLock": {"value": "[parameters('enableResourceGroupLock')]"},
                        "lockType": {"value": "[parameters('resourceGroupLockType')]"},
                        "tags": {"value": "[parameters('tags')]"},
                    },
                },
            },
        ],
        "outputs": {
            "resourceGroupName": {"type": "string", "value": "[parameters('resourceGroupName')]"},
            "workspaceName": {"type": "string", "value": "[parameters('logAnalyticsWorkspaceName')]"},
            "workspaceId": {
                "type": "string",
                "value": f"[reference({nested_id}).outputs.workspaceId.value]",
            },
            "subscriptionId": {"type": "string", "value": "[subscription().subscriptionId]"},
            "sentinelUrl": {
                "type": "string",
                "value": (
                    "[concat('https://portal.azure.com/#view/Microsoft_Azure_Security_Insights/MainMenuBlade/~/0/subscriptionId/', "
                    "subscription().subscriptionId, '/resourceGroup/', parameters('resourceGroupName'))]"
                ),
            },
        },
    }


def build_template_parameters(values: Dict[str, Any], extended: bool = True) -> Dict[str, Any]:
    """Wrap parameter values in a deployment parameters document.

    With extended=False only the base parameter names are kept, for templates
    that do not declare the optional Sentinel switches.
    """
    if not extended:
        values = {k: v for k, v in values.items() if k in BASE_PARAMETER_NAMES}
    return {
        "$schema": PARAMETERS_SCHEMA,
        "contentVersion": "1.0.0.0",
        "parameters": {name: {"value": value} for name, value in values.items()},
    }


def write_template(document: Dict[str, Any], path: Path) -> Path:
    """Write a template or parameters document as indented JSON."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(document, f, indent=2)
    logger.debug(f"Wrote {path}")
    return path
