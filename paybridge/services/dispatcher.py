import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from .database import EntitlementStore, utcnow
from .rcon import RconClient, RconError
from .sku import KIND_RAINBOW, KIND_VIP, GrantDescriptor
from ..utils.logger import logger


@dataclass(frozen=True)
class CommandStep:
    grant: str
    revoke: Optional[str] = None
    critical: bool = False

    def render(self, player_id: str, duration: str) -> str:
        return self.grant.format(player=player_id, duration=duration)

    def render_revoke(self, player_id: str) -> Optional[str]:
        if not self.revoke:
            return None
        return self.revoke.format(player=player_id)


@dataclass(frozen=True)
class GrantPlan:
    kind: str
    steps: Sequence[CommandStep]
    label: str = ""


DEFAULT_PLANS: Dict[str, GrantPlan] = {
    KIND_VIP: GrantPlan(
        kind=KIND_VIP,
        label="VIP",
        steps=(
            CommandStep(
                grant="loverustvip.grant {player} {duration}",
                revoke="loverustvip.revoke {player}",
                critical=True,
            ),
            CommandStep(
                grant="oxide.grant user {player} vipwall.use",
                revoke="oxide.revoke user {player} vipwall.use",
            ),
        ),
    ),
    KIND_RAINBOW: GrantPlan(
        kind=KIND_RAINBOW,
        label="Rainbow Name",
        steps=(
            CommandStep(
                grant="loverustvip.grantrainbow {player} {duration}",
                revoke="oxide.revoke user {player} vip.rainbow",
                critical=True,
            ),
        ),
    ),
}


@dataclass
class CommandOutcome:
    command: str
    ok: bool
    response: str = ""
    error: str = ""
    critical: bool = False


@dataclass
class DispatchOutcome:
    descriptor: GrantDescriptor
    player_id: str
    txn_id: Optional[str]
    granted_at: datetime
    commands: List[CommandOutcome] = field(default_factory=list)
    entitlement_ids: List[int] = field(default_factory=list)
    ledger_errors: List[str] = field(default_factory=list)

    @property
    def failed(self) -> List[CommandOutcome]:
        return [outcome for outcome in self.commands if not outcome.ok]

    @property
    def issued(self) -> List[str]:
        return [outcome.command for outcome in self.commands]


class GrantDispatchError(Exception):
    def __init__(self, message: str, outcome: DispatchOutcome):
        super().__init__(message)
        self.outcome = outcome


class UnknownGrantKind(GrantDispatchError):
    pass


class GrantDispatcher:
    def __init__(
        self,
        rcon: RconClient,
        store: Optional[EntitlementStore] = None,
        plans: Optional[Dict[str, GrantPlan]] = None,
        command_delay: float = 0.3,
        first_timeout: float = 5.0,
        timeout: float = 8.0,
    ):
        self.rcon = rcon
        self.store = store or EntitlementStore()
        self.plans = dict(DEFAULT_PLANS if plans is None else plans)
        self.command_delay = command_delay
        self.first_timeout = first_timeout
        self.timeout = timeout

    def plan_for(self, descriptor: GrantDescriptor) -> Optional[GrantPlan]:
        return self.plans.get(descriptor.kind)

    def render_commands(self, descriptor: GrantDescriptor, player_id: str) -> List[str]:
        plan = self.plan_for(descriptor)
        if plan is None:
            return []
        return [step.render(player_id, descriptor.duration) for step in plan.steps]

    async def dispatch(
        self,
        descriptor: GrantDescriptor,
        player_id: str,
        txn_id: Optional[str] = None,
    ) -> DispatchOutcome:
        outcome = DispatchOutcome(descriptor=descriptor, player_id=player_id, txn_id=txn_id, granted_at=utcnow())
        plan = self.plan_for(descriptor)
        if plan is None:
            raise UnknownGrantKind(f"No grant plan for kind {descriptor.kind!r}", outcome)

        succeeded: List[CommandStep] = []
        for index, step in enumerate(plan.steps):
            if index:
                await asyncio.sleep(self.command_delay)

            command = step.render(player_id, descriptor.duration)
            timeout = self.first_timeout if index == 0 else self.timeout
            try:
                result = await self.rcon.send(command, timeout=timeout)
            except RconError as exc:
                outcome.commands.append(CommandOutcome(command=command, ok=False, error=str(exc), critical=step.critical))
                if step.critical:
                    logger.error(f"Critical grant command failed for {player_id} (txn {txn_id}): {command}: {exc}")
                    raise GrantDispatchError(f"{command}: {exc}", outcome) from exc
                logger.warning(f"Grant sub-command failed for {player_id} (txn {txn_id}): {command}: {exc}")
                continue

            outcome.commands.append(
                CommandOutcome(command=command, ok=True, response=result.response, critical=step.critical)
            )
            succeeded.append(step)

        await self._record_entitlements(outcome, succeeded)
        return outcome

    async def _record_entitlements(self, outcome: DispatchOutcome, steps: Sequence[CommandStep]) -> None:
        # Commands have already run here; ledger errors are reported, never raised.
        delta = outcome.descriptor.duration_delta
        if delta is None:
            return

        expires_at = outcome.granted_at + delta
        for step in steps:
            revoke_command = step.render_revoke(outcome.player_id)
            if not revoke_command:
                continue
            try:
                entry = await self.store.record(
                    owner_id=outcome.player_id,
                    sku=outcome.descriptor.effective_sku,
                    txn_id=outcome.txn_id,
                    grant_command=step.render(outcome.player_id, outcome.descriptor.duration),
                    revoke_command=revoke_command,
                    granted_at=outcome.granted_at,
                    expires_at=expires_at,
                )
            except Exception as exc:
                logger.exception(
                    f"Entitlement not recorded for {outcome.player_id} (txn {outcome.txn_id}), "
                    f"revoke `{revoke_command}` must be run by hand: {exc}"
                )
                outcome.ledger_errors.append(revoke_command)
                continue
            outcome.entitlement_ids.append(entry.id)
