"""
Deployment module for Azure security monitoring infrastructure.

This module contains all deployment-related components:
- Azure CLI client and input validation
- Resource group, workspace and Microsoft Sentinel management
- ARM template builders, deployment state and rollback
"""
