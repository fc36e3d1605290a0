"""
Builders that turn route input into upstream field maps.

Optional fields are only inserted when present, so the upstream never sees
empty filters the caller did not ask for.
"""

from typing import Any, Dict, List, Mapping, Optional

from shared.errors import ValidationError


FLOW_REQUIRED_LISTS = {
    "filter_countries": ("Countries", "country"),
    "filter_devices": ("Devices", "device"),
    "filter_os": ("Operating systems", "OS"),
    "filter_browsers": ("Browsers", "browser"),
}

FLOW_OPTIONAL_LISTS = ("filter_langs", "filter_time_zones", "filter_connections")

FLOW_FLAGS = (
    "filter_cloaking_flag",
    "filter_vpn_proxy_flag",
    "filter_ip_v6_flag",
    "filter_referer_flag",
    "filter_isp_flag",
    "filter_black_ip_flag",
    "filter_ip_clicks_per_day",
    "filter_clicks_before_filtering",
)

FLOW_LIST_MODES = (
    "mode_list_country",
    "mode_list_device",
    "mode_list_os",
    "mode_list_browser",
    "mode_list_lang",
    "mode_list_time_zone",
    "mode_list_connection",
)

FILTER_LISTS = ("list_ips", "list_agents", "list_providers", "list_referers")

REPORT_FILTERS = (
    "filter_countries",
    "filter_flows",
    "filter_devices",
    "filter_os",
    "filter_browsers",
    "filter_langs",
)

CLICK_FILTERS = REPORT_FILTERS + ("filter_filters", "filter_pages")


def int_or(value: Any, default: int) -> int:
    """Coerce to int; unparseable or zero values fall back to ``default``."""
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return default
    return number or default


def list_or_empty(value: Any) -> List[Any]:
    return list(value) if isinstance(value, (list, tuple)) else []


def _require_list(form: Mapping[str, Any], field: str, plural: str, singular: str) -> List[Any]:
    value = form.get(field)
    if not isinstance(value, (list, tuple)) or len(value) == 0:
        raise ValidationError(
            f"{plural} are required. Please provide at least one {singular} to proceed.",
            details={"error": f"Missing required field: {field}", "field": field},
        )
    return list(value)


def flow_fields(form: Mapping[str, Any], flow_id: Optional[int] = None) -> Dict[str, Any]:
    """Fields for ``/flows/create`` or, with ``flow_id``, ``/flows/update``."""
    fields: Dict[str, Any] = {}
    if flow_id is not None:
        fields["flow_id"] = int(flow_id)

    for name in ("name", "url_white_page", "url_offer_page", "mode_white_page", "mode_offer_page"):
        if form.get(name) is not None:
            fields[name] = form[name]

    for field, (plural, singular) in FLOW_REQUIRED_LISTS.items():
        fields[field] = _require_list(form, field, plural, singular)
    for field in FLOW_OPTIONAL_LISTS:
        fields[field] = list_or_empty(form.get(field))

    for field in FLOW_FLAGS:
        fields[field] = int_or(form.get(field), 0)
    for field in FLOW_LIST_MODES:
        fields[field] = int_or(form.get(field), 1)

    fields["status"] = form.get("status") or "active"
    fields["filter_id"] = int_or(form.get("filter_id"), 0)
    fields["allowed_ips"] = list_or_empty(form.get("allowed_ips"))
    return fields


def filter_fields(form: Mapping[str, Any], filter_id: Optional[int] = None) -> Dict[str, Any]:
    """Fields for ``/filters/create`` or, with ``filter_id``, ``/filters/update``.

    ``list_type`` is fixed at creation and is not sent on update.
    """
    fields: Dict[str, Any] = {}
    if filter_id is not None:
        fields["filter_id"] = int(filter_id)
    if form.get("name") is not None:
        fields["name"] = form["name"]
    if filter_id is None and form.get("list_type") is not None:
        fields["list_type"] = form["list_type"]
    for field in FILTER_LISTS:
        fields[field] = list_or_empty(form.get(field))
    return fields


def listing_fields(page: int = 1, per_page: int = 10, **optional: Any) -> Dict[str, Any]:
    """Paging fields plus any optional filters that were actually given."""
    fields: Dict[str, Any] = {"page": int_or(page, 1), "per_page": int_or(per_page, 10)}
    for name, value in optional.items():
        if value:
            fields[name] = value
    return fields


def _add_report_filters(fields: Dict[str, Any], body: Mapping[str, Any], names: tuple) -> None:
    if body.get("date_ranges"):
        fields["date_ranges"] = body["date_ranges"]
    for name in names:
        values = list_or_empty(body.get(name))
        if values:
            fields[name] = values


def statistics_fields(body: Mapping[str, Any]) -> Dict[str, Any]:
    """Fields for ``/statistics``; ``group_by`` is mandatory."""
    group_by = body.get("group_by")
    if not group_by:
        raise ValidationError("group_by parameter is required", details={"field": "group_by"})
    fields: Dict[str, Any] = {"group_by": group_by}
    _add_report_filters(fields, body, REPORT_FILTERS)
    return fields


def clicks_fields(body: Mapping[str, Any]) -> Dict[str, Any]:
    """Fields for ``/clicks``."""
    fields = listing_fields(body.get("page", 1), body.get("per_page", 10))
    _add_report_filters(fields, body, CLICK_FILTERS)
    return fields
