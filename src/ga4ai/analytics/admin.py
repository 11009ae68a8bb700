"""
Admin Formatting - Accounts, Property Details and Custom Definitions.

Non-report intents return administrative payloads rather than rows. The
helpers here read the shapes the analytics server is known to return for
them, in either key spelling, and render markdown for the caller.
"""

from typing import Any, Optional

from ga4ai.analytics.results import display_label, unwrap

HELP_TEXT = """\
**GA4 Analytics Assistant**

I can help you with:
- Listing your GA4 properties
- Getting property details
- Listing custom dimensions and metrics
- Running analytics reports, or a comprehensive report for a property

Try asking:
- "List all my properties"
- "Show property details for 358809672"
- "Get custom dimensions for property 358809672"
- "Sessions by country last 7 days"
- "Full breakdown of my traffic"
"""

CUSTOM_DEFINITIONS_HELP = """\
**Custom Dimensions Query**

Please specify a property ID to get custom dimensions.

**Example:**
- "Get custom dimensions for property 358809672"
- "Show custom dimensions and metrics for property 358809672"
"""


def _pick(d: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if d.get(key):
            return d[key]
    return default


def _strip_prefix(value: str, *prefixes: str) -> str:
    for prefix in prefixes:
        if value.startswith(prefix):
            return value[len(prefix) :]
    return value


def _accounts(value: Any) -> list[dict[str, Any]]:
    if isinstance(value, list):
        return [a for a in value if isinstance(a, dict)]
    if isinstance(value, dict):
        for key in ("account_summaries", "accountSummaries", "accounts"):
            if isinstance(value.get(key), list):
                return [a for a in value[key] if isinstance(a, dict)]
    return []


def format_account_summaries(raw: Any) -> Optional[str]:
    """Markdown list of accounts and their properties, ``None`` if there are none."""
    accounts = _accounts(unwrap(raw))
    lines = ["**Your GA4 Properties**", ""]
    total = 0
    for index, account in enumerate(accounts, start=1):
        name = _pick(
            account, "display_name", "displayName", "name", default=f"Account {index}"
        )
        account_id = _strip_prefix(
            str(_pick(account, "account", "account_id", "accountId", default="N/A")),
            "accounts/",
            "accountSummaries/",
        )
        properties = _pick(
            account,
            "property_summaries",
            "propertySummaries",
            "properties",
            default=[],
        )
        total += len(properties)
        lines.append(f"**Account {index}: {name}** (Account ID: {account_id})")
        for prop in properties:
            prop_name = _pick(
                prop, "display_name", "displayName", "name", default="Unnamed Property"
            )
            prop_id = _strip_prefix(
                str(_pick(prop, "property", "property_id", "propertyId", default="N/A")),
                "properties/",
            )
            lines.append(f"- {prop_name} ({prop_id})")
        lines.append("")

    if total == 0:
        return None
    lines.append(
        f"**Total: {total} properties across {len(accounts)} "
        f"account{'' if len(accounts) == 1 else 's'}**"
    )
    return "\n".join(lines)


def format_known_properties(aliases: dict[str, str]) -> str:
    """Markdown list of the configured aliases, used when the live list is unavailable."""
    lines = ["**Known GA4 Properties**", ""]
    for name, property_id in aliases.items():
        lines.append(f"- {name.title()} ({property_id})")
    lines += ["", f"**Total: {len(aliases)} properties**"]
    return "\n".join(lines)


def format_property_details(raw: Any, property_id: str) -> str:
    value = unwrap(raw)
    lines = [f"**Property Details for {property_id}**", ""]
    if isinstance(value, dict):
        for key, item in value.items():
            if isinstance(item, (dict, list)):
                continue
            lines.append(f"- {display_label(key)}: {item}")
    else:
        lines.append(str(value))
    return "\n".join(lines)


def _definitions(value: Any, *keys: str) -> list[dict[str, Any]]:
    if isinstance(value, dict):
        for key in keys:
            if isinstance(value.get(key), list):
                return [d for d in value[key] if isinstance(d, dict)]
    return []


def _definition_table(title: str, definitions: list[dict[str, Any]]) -> list[str]:
    if not definitions:
        return [f"## {title}", "", f"No {title.lower()} found.", ""]
    lines = [
        f"## {title} ({len(definitions)})",
        "",
        "| API Name | Display Name | Scope | Description |",
        "| --- | --- | --- | --- |",
    ]
    for d in definitions:
        api_name = _pick(d, "api_name", "apiName", "parameter_name", "name", default="N/A")
        display = _pick(d, "display_name", "displayName", default="N/A")
        scope = d.get("scope") or "N/A"
        description = d.get("description") or "N/A"
        lines.append(f"| `{api_name}` | {display} | {scope} | {description} |")
    lines.append("")
    return lines


def format_custom_definitions(raw: Any, property_id: str) -> str:
    value = unwrap(raw)
    if isinstance(value, str):
        return f"**Custom Dimensions & Metrics for Property {property_id}**\n\n{value}"
    dimensions = _definitions(value, "custom_dimensions", "customDimensions", "dimensions")
    metrics = _definitions(value, "custom_metrics", "customMetrics", "metrics")
    lines = [f"**Custom Dimensions & Metrics for Property {property_id}**", ""]
    lines += _definition_table("Custom Dimensions", dimensions)
    lines += _definition_table("Custom Metrics", metrics)
    if dimensions:
        lines += ["**Example Queries:**"]
        for d in dimensions[:3]:
            api_name = _pick(d, "api_name", "apiName", "parameter_name", "name")
            lines.append(f'- "Show pageviews by {api_name} for property {property_id}"')
    return "\n".join(lines).rstrip()
