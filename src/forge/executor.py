# executor.py
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional, Tuple

from .cache import CacheManager, CacheSession
from .dag import step_id
from .errors import INTERNAL_ERROR, ForgeError, ProviderError, SecretError, StepExitError
from .events import EventKind, EventSink, ExecutionEvent
from .logs import LogStore
from .model import PipelineConfig, Stage, Step
from .results import LogRef, StepOutcome, StepResult
from .sandbox.base import SandboxHandle, SandboxProvider
from .secrets import Redactor, SecretResolver


def _now() -> datetime:
    return datetime.now(timezone.utc)


def redact_error(error: ForgeError, redactor: Redactor) -> ForgeError:
    """Copy of `error` with every known secret value masked."""
    if not redactor:
        return error
    details = {
        k: redactor.redact_text(v) if isinstance(v, str) else v
        for k, v in error.details.items()
    }
    return replace(error, message=redactor.redact_text(error.message), details=details)


class StepExecutor:
    """
    Runs one step end to end:

        secrets.resolve -> cache.restore -> provider.prepare/run/wait
        -> cache.persist (success only) -> provider.dispose (always)

    Every outcome, including engine errors, comes back as a StepResult.
    Output is redacted, written to the step log and forwarded as events.
    """

    def __init__(
        self,
        config: PipelineConfig,
        provider: SandboxProvider,
        cache: CacheManager,
        secrets: SecretResolver,
        logs: LogStore,
    ):
        self.config = config
        self.provider = provider
        self.cache = cache
        self.secrets = secrets
        self.logs = logs

    def execute(self, stage: Stage, step: Step, emit: EventSink) -> StepResult:
        started = _now()
        node = step_id(stage.name, step.name)

        # ---- secrets: a missing one stops the step before any sandbox exists ----
        try:
            declarations = self.secrets.declarations_for(step, self.config.secrets)
            secret_values = self.secrets.resolve(declarations)
        except SecretError as e:
            return StepResult(
                stage=stage.name,
                step=step.name,
                outcome=StepOutcome.EXECUTION_ERROR,
                started_at=started,
                finished_at=_now(),
                error=e,
            )

        redactor = Redactor(secret_values.values())
        env = dict(step.env)
        env.update(secret_values)

        # ---- cache restore ----
        session = self.cache.restore(node, self.config.cache)
        warnings = [redactor.redact_text(w.message) for w in session.warnings]
        for w in warnings:
            emit(ExecutionEvent(kind=EventKind.WARNING, stage=stage.name, step=step.name, message=w))

        try:
            exit_code, log_ref, error = self._run_in_sandbox(stage, step, env, session, redactor, emit)

            # ---- cache persist (never after a failure) ----
            if error is None and exit_code == 0:
                for w in self.cache.persist(session, self.config.cache):
                    msg = redactor.redact_text(w.message)
                    warnings.append(msg)
                    emit(ExecutionEvent(kind=EventKind.WARNING, stage=stage.name, step=step.name, message=msg))
        finally:
            self.cache.release(session)

        if error is not None:
            outcome = StepOutcome.EXECUTION_ERROR
        elif exit_code != 0:
            outcome = StepOutcome.NON_ZERO_EXIT
            error = StepExitError.for_exit(stage.name, step.name, exit_code)
        else:
            outcome = StepOutcome.SUCCESS

        return StepResult(
            stage=stage.name,
            step=step.name,
            outcome=outcome,
            exit_code=exit_code,
            started_at=started,
            finished_at=_now(),
            log=log_ref,
            error=error,
            warnings=tuple(warnings),
        )

    def _run_in_sandbox(
        self,
        stage: Stage,
        step: Step,
        env: dict,
        session: CacheSession,
        redactor: Redactor,
        emit: EventSink,
    ) -> Tuple[Optional[int], Optional[LogRef], Optional[ForgeError]]:
        """Returns (exit_code, log_ref, error); never raises for provider failures."""
        log = self.logs.for_step(stage.name, step.name)
        handle: Optional[SandboxHandle] = None
        try:
            handle = self.provider.prepare(step.image)
            stream = self.provider.run(handle, step.command, step.working_dir, env, session.mounts)
            with log:
                for chunk in redactor.redact_stream(stream):
                    log.write(chunk)
                    emit(
                        ExecutionEvent(
                            kind=EventKind.STEP_OUTPUT,
                            stage=stage.name,
                            step=step.name,
                            data=chunk,
                        )
                    )
            return self.provider.wait(handle), log.ref, None
        except ProviderError as e:
            ref = log.ref if log.path.exists() else None
            return None, ref, redact_error(e, redactor)
        except Exception as e:
            # provider bug: still a step failure, and its text may carry env values
            ref = log.ref if log.path.exists() else None
            error = ForgeError(kind=INTERNAL_ERROR, message=f"{type(e).__name__}: {e}")
            return None, ref, redact_error(error, redactor)
        finally:
            if handle is not None:
                self.provider.dispose(handle)
