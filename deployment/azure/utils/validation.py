"""Input checks applied before any Azure resource is created."""
import re
from typing import List, Optional, Tuple

RESOURCE_GROUP_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9._()\-]+$")
RESOURCE_GROUP_MAX_LENGTH = 90

# Regions offered by the quick start menu, in menu order
QUICKSTART_REGIONS: List[Tuple[str, str]] = [
    ("eastus", "East US"),
    ("eastus2", "East US 2"),
    ("westus", "West US"),
    ("westus2", "West US 2"),
    ("centralus", "Central US"),
    ("northeurope", "North Europe"),
    ("westeurope", "West Europe"),
    ("uksouth", "UK South"),
    ("australiaeast", "Australia East"),
    ("southeastasia", "Southeast Asia"),
]


class ValidationError(ValueError):
    pass


def validate_resource_group_name(name: Optional[str]) -> str:
    """Return the name unchanged or raise ValidationError describing the problem."""
    if not name or len(name) > RESOURCE_GROUP_MAX_LENGTH:
        raise ValidationError(
            f"Resource group name must be 1-{RESOURCE_GROUP_MAX_LENGTH} characters long"
        )

    if not RESOURCE_GROUP_NAME_PATTERN.match(name):
        raise ValidationError(
            "Resource group name contains invalid characters. "
            "Valid characters: alphanumeric, periods, underscores, hyphens, parentheses"
        )

    if name.endswith("."):
        raise ValidationError("Resource group name cannot end with a period")

    return name


def region_for_choice(choice: Optional[str]) -> str:
    """Map a 1-based quick start menu choice to a region name; empty means the first."""
    if choice is None or not str(choice).strip():
        return QUICKSTART_REGIONS[0][0]

    text = str(choice).strip()
    if not text.isdigit() or not 1 <= int(text) <= len(QUICKSTART_REGIONS):
        raise ValidationError(f"Please enter a number between 1-{len(QUICKSTART_REGIONS)}")
    return QUICKSTART_REGIONS[int(text) - 1][0]


def missing_parameters(**params: Optional[str]) -> List[str]:
    """Names of required parameters that are empty."""
    return [name for name, value in params.items() if not value]
