from __future__ import annotations

from . import ActionContext, ActionOutput, register


@register("checkout")
def checkout(ctx: ActionContext) -> ActionOutput:
    # The run already executes inside the checked-out workspace.
    ref = ctx.context.sha or ctx.context.branch or "working tree"
    return ActionOutput(output=f"workspace {ctx.workdir} ({ref})\n")
