"""Azure CLI based provisioning of Log Analytics and Microsoft Sentinel."""
