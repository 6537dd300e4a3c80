"""Parallel fan-out executor.

``run_fan_out`` issues one call per target, all at once, and records every
target's outcome. A failing target never aborts the others; only
cancellation stops the batch. ``QueryModelsExecutor`` is the handler for
"query-models" jobs: ask every configured model the same question and return
one aggregate result, which completes even if every model failed.
"""
import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from pydantic import ValidationError

from advisor.schemas.job import QueryJobCreate
from advisor.services.backend_client import BackendClient
from advisor.services.cancellation import CancellationToken, JobCancelledError
from advisor.services.circuit_breaker import CircuitOpenError
from advisor.services.job_worker import InvalidJobInputError, ProgressCallback
from advisor.services.jobs import Job, safe_error_message, utc_now

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant answering a user's question."
PROGRESS_BAND = (10, 80)


@dataclass
class TargetOutcome:
    target: str
    output: str
    error: bool = False
    breaker_open: bool = False
    system_prompt: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class QueryResult:
    session_id: str
    response: str
    models_queried: int
    responses_by_model: List[TargetOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.responses_by_model if not r.error)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.responses_by_model if r.error)

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "response": self.response,
            "models_queried": self.models_queried,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "responses_by_model": [r.to_dict() for r in self.responses_by_model],
        }


def describe_failure(target: str, exc: BaseException) -> TargetOutcome:
    """Turn a per-target exception into a recorded error outcome."""
    message = safe_error_message(exc)
    breaker_open = isinstance(exc, CircuitOpenError)
    logger.error(json.dumps({
        "timestamp": utc_now().isoformat(),
        "model": target,
        "error": message,
        "severity": "HIGH" if breaker_open else "MEDIUM",
        "is_circuit_breaker_error": breaker_open,
    }))
    if breaker_open:
        output = f"Service temporarily unavailable (circuit breaker active). {message}"
    else:
        output = f"Error: Could not get response from {target}. {message}"
    return TargetOutcome(target=target, output=output, error=True, breaker_open=breaker_open)


async def run_fan_out(
    targets: Sequence[str],
    call: Callable[[str], Awaitable[str]],
    *,
    token: Optional[CancellationToken] = None,
    progress: Optional[ProgressCallback] = None,
    band: tuple[float, float] = PROGRESS_BAND,
) -> list[TargetOutcome]:
    """Call every target concurrently and collect one outcome per target.

    Args:
        targets: target names, one call each.
        call: async (target) -> output text.
        token: job cancellation token; when it fires, in-flight calls are
            cancelled and JobCancelledError is raised.
        progress: (percentage, message) callback, invoked as each call
            settles, evenly spread across ``band``.

    Returns:
        Outcomes in input order.
    """
    total = len(targets)
    if total == 0:
        return []

    outcomes: list[Optional[TargetOutcome]] = [None] * total
    low, high = band
    settled = ok_count = error_count = 0

    async def _run_one(index: int, target: str):
        nonlocal settled, ok_count, error_count
        try:
            output = await call(target)
            outcomes[index] = TargetOutcome(target=target, output=output)
            ok_count += 1
        except JobCancelledError:
            raise
        except Exception as exc:
            outcomes[index] = describe_failure(target, exc)
            error_count += 1

        settled += 1
        if progress:
            progress(
                low + (high - low) * settled / total,
                f"{target} finished ({settled}/{total}, {ok_count} ok, {error_count} errors)",
            )

    if token is not None:
        token.raise_if_cancelled()
    tasks = [asyncio.create_task(_run_one(i, t)) for i, t in enumerate(targets)]
    gathered = asyncio.gather(*tasks)
    try:
        if token is not None:
            await token.guard(gathered)
        else:
            await gathered
    except JobCancelledError:
        for t in tasks:
            if not t.done():
                t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    return outcomes  # type: ignore[return-value]


class QueryModelsExecutor:
    """Handler for "query-models" jobs."""

    def __init__(
        self,
        client: BackendClient,
        default_models: Iterable[str],
        *,
        system_prompts: Optional[Dict[str, str]] = None,
        chat_models: Iterable[str] = (),
    ):
        self.client = client
        self.default_models = list(default_models)
        self.system_prompts = dict(system_prompts or {})
        self.chat_models = set(chat_models)

    def parse_input(self, raw: dict) -> QueryJobCreate:
        try:
            request = QueryJobCreate.model_validate(raw)
        except ValidationError as e:
            raise InvalidJobInputError(f"Invalid query-models input: {e.errors()[0]['msg']}") from e
        if not (request.models or self.default_models):
            raise InvalidJobInputError("No models configured to query")
        return request

    def resolve_system_prompt(self, model: str, request: QueryJobCreate) -> str:
        if request.model_system_prompts and request.model_system_prompts.get(model):
            return request.model_system_prompts[model]
        if request.system_prompt:
            return request.system_prompt
        return self.system_prompts.get(model, DEFAULT_SYSTEM_PROMPT)

    def build_payload(self, model: str, question: str, system_prompt: str) -> dict:
        if model in self.chat_models:
            return {"messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": question},
            ]}
        return {"prompt": question, "system": system_prompt}

    async def __call__(
        self, job: Job, token: CancellationToken, progress: ProgressCallback,
    ) -> dict:
        request = self.parse_input(job.input)
        models = request.models or self.default_models
        session_id = request.session_id or f"session_{int(time.time() * 1000)}"
        prompts = {m: self.resolve_system_prompt(m, request) for m in models}

        progress(5, f"Starting query for {len(models)} models...")

        async def _ask(model: str) -> str:
            payload = self.build_payload(model, request.question, prompts[model])
            return await self.client.call(model, payload, token=token)

        outcomes = await run_fan_out(models, _ask, token=token, progress=progress)
        for outcome in outcomes:
            outcome.system_prompt = prompts[outcome.target]

        token.raise_if_cancelled()
        progress(80, "Processing responses...")

        result = QueryResult(
            session_id=session_id,
            response=format_responses(session_id, outcomes),
            models_queried=len(models),
            responses_by_model=outcomes,
        )
        if result.succeeded == 0:
            logger.warning(f"Job {job.id}: all {len(models)} models failed")
        progress(95, "Completed")
        return result.to_dict()


def format_responses(session_id: str, outcomes: List[TargetOutcome]) -> str:
    """Markdown digest of every model's answer."""
    sections = []
    for outcome in outcomes:
        role = ""
        if outcome.system_prompt:
            prompt = outcome.system_prompt
            role = f"*Role: {prompt[:100]}{'...' if len(prompt) > 100 else ''}*\n\n"
        sections.append(f"## {outcome.target.upper()} RESPONSE:\n{role}{outcome.output}\n\n")
    return (
        "# Responses from Multiple Models\n\n"
        f"**Session ID**: `{session_id}`\n"
        "(Use this session ID to continue the conversation)\n\n"
        + "".join(sections)
        + "Consider the perspectives above when formulating your response. "
        "You may agree or disagree with any of these models."
    )
