"""
Built-in booking flow — used whenever a tenant has no active flow of its own.

It is the bundled `salon-booking-flow` template materialized with its
template node ids kept (welcome_msg, service_confirmed, ...), so the
booking state table can address its nodes directly.
"""
from __future__ import annotations

from config.settings import BookingConfig
from flows.templates import TemplateLibrary, customize_configuration
from models.schemas import Flow

STATIC_FLOW_ID = "builtin-booking"
STATIC_TEMPLATE_ID = "salon-booking-flow"


def build_static_flow(config: BookingConfig, library: TemplateLibrary = None) -> Flow:
    library = library or TemplateLibrary.with_builtins()
    template = library.get(STATIC_TEMPLATE_ID)
    if template is None:
        raise LookupError(f"Built-in template '{STATIC_TEMPLATE_ID}' is not registered")

    values = {v.name: v.default_value for v in template.variables if v.default_value is not None}
    values["businessName"] = config.business_name

    flow = Flow(
        id=STATIC_FLOW_ID,
        tenant_id="*",
        name=template.name,
        description=template.description,
        flow_type="builtin",
        business_type=template.business_type,
        is_active=True,
        variables=template.variables,
        metadata={**template.metadata, "template_id": template.id},
    )
    flow.nodes = [
        customize_configuration(node.model_copy(update={"flow_id": flow.id}), values)
        for node in template.nodes
    ]
    start = flow.start_node()
    flow.start_node_id = start.id if start else None
    return flow
