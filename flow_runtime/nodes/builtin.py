# flow_runtime/nodes/builtin.py
import json
import re
from typing import Any, Dict, List

from ..models import NeedsInput, NodeResult, approval_message
from ..registry import NodeContext, register_handler

# Node types with no outside service behind them. Networked types
# (model, api, database, ...) are registered by the embedding application.


def _ordered_values(inputs: Dict[str, Any]) -> List[Any]:
    def handle_number(key: str) -> int:
        match = re.search(r"(\d+)$", key)
        return int(match.group(1)) if match else 0

    keys = sorted(inputs, key=handle_number)
    return [inputs[k] for k in keys if inputs[k] is not None]


@register_handler("input")
async def input_node(ctx: NodeContext) -> NodeResult:
    input_type = ctx.data.get("inputType", "user")
    ctx.report_progress(f"Processing {input_type} input")
    flow = ctx.flow_inputs
    value = flow.get("input", flow.get("userMessage", flow or ""))
    return NodeResult(output=value)


@register_handler("output")
async def output_node(ctx: NodeContext) -> NodeResult:
    output = ctx.first_input() if len(ctx.inputs) == 1 else dict(ctx.inputs)
    ctx.report_progress(f"Output ready ({ctx.data.get('outputType', 'chat')})")
    return NodeResult(output=output)


@register_handler("transform")
async def transform_node(ctx: NodeContext) -> NodeResult:
    kind = ctx.data.get("transformType", "json")
    value = ctx.first_input()
    if kind == "json":
        output = json.loads(value) if isinstance(value, str) else json.dumps(value, indent=2)
    elif kind == "text":
        output = "" if value is None else str(value)
    elif kind == "format":
        output = str(ctx.data.get("transformExpression", "")).replace("{{input}}", str(value))
    else:
        output = value
    ctx.report_progress(f"Transform ({kind}) completed")
    return NodeResult(output=output)


@register_handler("merge")
async def merge_node(ctx: NodeContext) -> NodeResult:
    strategy = ctx.data.get("mergeStrategy", "concat")
    values = _ordered_values(ctx.inputs)
    ctx.report_progress(f"Merging {len(values)} inputs ({strategy})")
    if strategy == "concat":
        output: Any = "\n\n".join(v if isinstance(v, str) else json.dumps(v) for v in values)
    elif strategy == "array":
        output = []
        for v in values:
            output.extend(v if isinstance(v, list) else [v])
    elif strategy == "object":
        output = {k: v for k, v in ctx.inputs.items() if v is not None}
    elif strategy == "first":
        output = values[0] if values else None
    elif strategy == "last":
        output = values[-1] if values else None
    else:
        output = values
    return NodeResult(output=output, log=f"merged {len(values)} inputs")


@register_handler("filter")
async def filter_node(ctx: NodeContext) -> NodeResult:
    condition = str(ctx.data.get("filterCondition", ""))
    value = ctx.first_input()
    if isinstance(value, list):
        match = re.search(r"length\s*>\s*(\d+)", condition)
        if match:
            limit = int(match.group(1))
            return NodeResult(output=[item for item in value if len(str(item)) > limit])
        return NodeResult(output=[item for item in value if item])
    passes = condition in str(value) if condition else bool(value)
    return NodeResult(output=value if passes else None)


def _text(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value)


@register_handler("prompt")
async def prompt_node(ctx: NodeContext) -> NodeResult:
    """Fills ``{{handle}}`` placeholders in ``promptContent`` from the inputs."""
    content = str(ctx.data.get("promptContent", ""))
    for key, value in ctx.inputs.items():
        content = content.replace("{{%s}}" % key, _text(value))
    ctx.report_progress("Prompt prepared")
    return NodeResult(output=content)


@register_handler("condition")
async def condition_node(ctx: NodeContext) -> NodeResult:
    # edges leaving trueHandle / falseHandle receive the input or None
    condition = str(ctx.data.get("condition") or "true")
    value = ctx.first_input()
    if condition == "true":
        result = True
    elif condition == "false":
        result = False
    elif "contains" in condition:
        match = re.search(r"contains\(['\"](.+)['\"]\)", condition)
        result = bool(match) and isinstance(value, str) and match.group(1) in value
    elif "length >" in condition:
        match = re.search(r"length\s*>\s*(\d+)", condition)
        result = bool(match) and isinstance(value, str) and len(value) > int(match.group(1))
    else:
        result = bool(value)
    ctx.report_progress(f"Condition evaluated: {str(result).lower()}")
    return NodeResult(
        output={
            "result": result,
            "trueHandle": value if result else None,
            "falseHandle": None if result else value,
        }
    )


@register_handler("split")
async def split_node(ctx: NodeContext) -> NodeResult:
    """Fans one input out to ``output-1`` .. ``output-N``.

    ``duplicate`` copies the input to every handle; ``distribute`` deals its
    items round-robin, unwrapping handles that end up with a single item.
    """
    mode = ctx.data.get("splitMode") or "distribute"
    count = int(ctx.data.get("outputCount") or 2)
    value = ctx.first_input()
    ctx.report_progress(f"Split mode: {mode}, outputs: {count}")
    handles = [f"output-{i}" for i in range(1, count + 1)]
    if mode == "duplicate":
        return NodeResult(output={h: value for h in handles})

    if isinstance(value, list):
        items = value
    elif isinstance(value, str):
        items = value.split(ctx.data.get("splitKey") or "\n")
    elif isinstance(value, dict):
        items = list(value.values())
    else:
        items = [value]

    buckets: Dict[str, List[Any]] = {h: [] for h in handles}
    for i, item in enumerate(items):
        buckets[handles[i % count]].append(item)
    output = {h: b[0] if len(b) == 1 else b for h, b in buckets.items()}
    return NodeResult(output=output, log=f"split {len(items)} items into {count} outputs")


def _case_matches(condition: str, text: str) -> bool:
    if condition == "default":
        return True
    if condition.startswith("contains:"):
        return condition[len("contains:"):].strip() in text
    if condition.startswith("equals:"):
        return text == condition[len("equals:"):].strip()
    if condition.startswith("regex:"):
        return re.search(condition[len("regex:"):].strip(), text) is not None
    return text == condition


@register_handler("switch")
async def switch_node(ctx: NodeContext) -> NodeResult:
    cases = ctx.data.get("switchCases") or []
    value = ctx.first_input()
    text = value if isinstance(value, str) else json.dumps(value)
    ctx.report_progress(f"Evaluating {len(cases)} cases")
    matched = next(
        (case["label"] for case in cases if _case_matches(str(case.get("condition", "")), text)),
        "default",
    )
    return NodeResult(output={"matchedCase": matched, "value": value})


@register_handler("loop")
async def loop_node(ctx: NodeContext) -> NodeResult:
    name = ctx.data.get("loopVariable") or "item"
    limit = int(ctx.data.get("maxIterations") or 100)
    value = ctx.first_input()
    if not isinstance(value, list):
        return NodeResult(output={name: value, "index": 0, "isLast": True})
    items = value[:limit]
    ctx.report_progress(f"Looping over {len(items)} items")
    return NodeResult(
        output=[{name: item, "index": i, "isLast": i == len(items) - 1} for i, item in enumerate(items)]
    )


@register_handler("delay")
async def delay_node(ctx: NodeContext) -> NodeResult:
    delay_ms = ctx.data.get("delayMs") or 1000
    ctx.report_progress(f"Waiting {delay_ms}ms")
    if await ctx.cancel_signal.sleep(delay_ms / 1000):
        return NodeResult(output=None, log="interrupted by cancellation")
    return NodeResult(output=ctx.first_input())


@register_handler("checkpoint")
async def checkpoint_node(ctx: NodeContext):
    """Asks for approval, then passes the approver's text (or its input) on."""
    if ctx.decision is None:
        return NeedsInput(message=approval_message(ctx.data))
    if ctx.decision.user_input:
        return NodeResult(output=ctx.decision.user_input, log="approved with input")
    return NodeResult(output=ctx.first_input(), log="approved")
