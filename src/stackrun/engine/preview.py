"""
Plan-only runs.

``preview_graph`` asks the reconciler what it would do for every declared
resource without calling any provider. Outputs that only exist after a
provider call show up as ``UNKNOWN`` in dependent specs, which the reconciler
treats as a changed field. A NoOp node resolves its cells from recorded state
so that downstream previews see real values.
"""

from __future__ import annotations

import structlog

from stackrun.core.errors import StackrunError
from stackrun.engine.cells import substitute
from stackrun.engine.context import RunContext
from stackrun.engine.graph import ResourceGraph
from stackrun.engine.reconciler import Action, Reconciler
from stackrun.engine.results import PreviewReport, PreviewStep

logger = structlog.get_logger()


def preview_graph(
    graph: ResourceGraph,
    context: RunContext,
    reconciler: Reconciler | None = None,
) -> PreviewReport:
    """Return the planned action for every declared and orphaned resource."""
    graph.claim("preview")
    order = graph.topological_order()
    for kind in sorted({node.kind for node in graph.nodes.values()}):
        context.adapter_for(kind)

    reconciler = reconciler or Reconciler()
    recorded = context.state.load()
    report = PreviewReport()

    for resource_id in order:
        node = graph.nodes[resource_id]
        entry = recorded.get(resource_id)
        try:
            desired = substitute(node.spec, allow_unknown=True)
            decision = reconciler.plan(
                desired,
                entry,
                context.adapter_for(node.kind),
                resource_id=str(resource_id),
            )
        except StackrunError as exc:
            logger.info("preview_node_error", resource_id=str(resource_id), error=exc.message)
            report.steps.append(PreviewStep(str(resource_id), None, error=exc.message))
            continue

        if decision.action is Action.NOOP and entry is not None:
            node.resolve_outputs(entry.outputs)
        report.steps.append(
            PreviewStep(
                str(resource_id),
                decision.action,
                changed_fields=list(decision.changed_fields),
                replace_fields=list(decision.replace_fields),
            )
        )

    for resource_id in sorted(rid for rid in recorded if rid not in graph):
        report.steps.append(PreviewStep(str(resource_id), Action.DELETE))

    logger.info("preview_finished", **report.counts())
    return report
