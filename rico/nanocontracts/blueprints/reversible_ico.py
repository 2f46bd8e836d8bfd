from typing import NamedTuple

from hathor import (
    Address,
    Amount,
    Blueprint,
    Context,
    NCDepositAction,
    NCFail,
    NCWithdrawalAction,
    TokenUid,
    export,
    public,
    view,
)

# Constants
HTR_UID = b"\x00"
TOKEN_UNIT = 100  # HTR and the sale token both use 2 decimal places
MAX_STAGE_COUNT = 255


class ReversibleICOErrors:
    """Common error messages"""

    OUT_OF_RANGE = "Block outside of sale period"
    INVALID_STAGE = "Invalid stage index"
    UNAUTHORIZED = "Unauthorized action"
    ALREADY_INITIALIZED = "Sale already initialized"
    NOT_INITIALIZED = "Sale not initialized"
    SALE_FROZEN = "Sale is frozen"
    NOT_FROZEN = "Sale is not frozen"
    STATUS_LOCKED = "Whitelist decision is final"
    NOTHING_TO_CANCEL = "No pending contributions"
    NOTHING_TO_REFUND = "Nothing to refund"
    INSUFFICIENT_BALANCE = "Amount exceeds reversible balance"
    SUPPLY_EXHAUSTED = "Not enough sale tokens left"
    EXCEEDS_AVAILABLE = "Amount exceeds funds available to the project"
    SALE_NOT_ENDED = "Sale has not ended"
    NOTHING_TO_CLAIM = "No tokens to claim"
    ALREADY_CLAIMED = "Already claimed"
    INVALID_AMOUNT = "Invalid amount"


class OutOfRange(NCFail):
    pass


class Unauthorized(NCFail):
    pass


class AlreadyInitialized(NCFail):
    pass


class SaleFrozen(NCFail):
    pass


class StatusLocked(NCFail):
    pass


class NothingToCancel(NCFail):
    pass


class InsufficientBalance(NCFail):
    pass


class ExceedsAvailable(NCFail):
    pass


class SupplyExhausted(NCFail):
    pass


class InvalidState(NCFail):
    pass


class InvalidActions(NCFail):
    pass


class InvalidAmount(NCFail):
    pass


class InvalidInput(NCFail):
    pass


class SaleState:
    """Lifecycle of the sale. Frozen is tracked separately."""

    UNINITIALIZED = 0  # Deployed, waiting for init()
    INITIALIZED = 1  # Configured, commit phase not started
    RUNNING = 2  # Inside the stage table
    ENDED = 3  # Past the last stage


class WhitelistStatus:
    PENDING = 0
    APPROVED = 1
    REJECTED = 2


class ContributionStatus:
    PENDING = 0
    ACCEPTED = 1
    CANCELLED = 2
    WITHDRAWN = 3


class ApplicationEventType:
    NOT_SET = 0  # matches the default value of an unset entry
    CONTRIBUTION_NEW = 1
    CONTRIBUTION_CANCEL = 2
    PARTICIPANT_CANCEL = 3
    COMMITMENT_ACCEPTED = 4
    WHITELIST_APPROVE = 5
    WHITELIST_REJECT = 6
    PROJECT_WITHDRAW = 7
    PARTICIPANT_WITHDRAW = 8


class TransferType:
    NOT_SET = 0
    AUTOMATIC_REFUND = 1
    WHITELIST_REJECT = 2
    PARTICIPANT_CANCEL = 3
    PARTICIPANT_WITHDRAW = 4
    PROJECT_WITHDRAW = 5


class Stage(NamedTuple):
    """Block range, inclusive on both ends, sold at a fixed token price."""

    start_block: int
    end_block: int
    token_price: int


class StageSchedule(NamedTuple):
    """Commit phase (stage 0) followed by `stage_count` equally long stages.

    Stage 0 lasts `commit_phase_block_count` blocks at `commit_phase_price`.
    Stage `i >= 1` lasts `stage_block_count` blocks and costs
    `commit_phase_price + stage_price_increase * i`.
    """

    commit_phase_start_block: int
    commit_phase_block_count: int
    commit_phase_price: int
    stage_count: int
    stage_block_count: int
    stage_price_increase: int

    @property
    def commit_phase_end_block(self) -> int:
        return self.commit_phase_start_block + self.commit_phase_block_count - 1

    @property
    def first_block(self) -> int:
        return self.commit_phase_start_block

    @property
    def last_block(self) -> int:
        return self.commit_phase_end_block + self.stage_count * self.stage_block_count

    def stage(self, index: int) -> Stage:
        if index < 0 or index > self.stage_count:
            raise OutOfRange(ReversibleICOErrors.INVALID_STAGE)
        if index == 0:
            return Stage(
                start_block=self.commit_phase_start_block,
                end_block=self.commit_phase_end_block,
                token_price=self.commit_phase_price,
            )
        start_block = self.commit_phase_end_block + 1 + (index - 1) * self.stage_block_count
        return Stage(
            start_block=start_block,
            end_block=start_block + self.stage_block_count - 1,
            token_price=self.commit_phase_price + self.stage_price_increase * index,
        )

    def stages(self) -> list[Stage]:
        return [self.stage(index) for index in range(self.stage_count + 1)]

    def stage_at(self, block: int) -> int:
        """Resolve a block number to the index of the stage that contains it."""
        if block < self.first_block or block > self.last_block:
            raise OutOfRange(ReversibleICOErrors.OUT_OF_RANGE)
        if block <= self.commit_phase_end_block:
            return 0

        index = 1 + (block - (self.commit_phase_end_block + 1)) // self.stage_block_count
        index = min(max(index, 1), self.stage_count)

        stage = self.stage(index)
        if block < stage.start_block or block > stage.end_block:
            raise OutOfRange(ReversibleICOErrors.OUT_OF_RANGE)
        return index

    def price_at(self, block: int) -> int:
        return self.stage(self.stage_at(block)).token_price


class ApplicationEvent(NamedTuple):
    """One entry of the append-only event log."""

    event_type: int
    participant: Address
    amount: int
    block_number: int


class LedgerTotals(NamedTuple):
    committed: int
    pending: int
    accepted: int
    withdrawn: int
    refund_owed: int
    project_withdrawn: int


def replay_application_events(events: list[ApplicationEvent]) -> LedgerTotals:
    """Rebuild the aggregate ledger totals from an event log.

    Events must be given in recorded order. A CONTRIBUTION_CANCEL pays the
    participant's whitelist-reject refund first and the rest out of
    contributions still pending, the same order `claim_refund` uses.
    """
    committed = pending = accepted = withdrawn = refund_owed = project_withdrawn = 0
    owed_by_participant: dict[bytes, int] = {}

    for event in events:
        amount = event.amount
        if event.event_type == ApplicationEventType.CONTRIBUTION_NEW:
            committed += amount
            pending += amount
        elif event.event_type == ApplicationEventType.COMMITMENT_ACCEPTED:
            committed += amount
            accepted += amount
        elif event.event_type == ApplicationEventType.WHITELIST_APPROVE:
            pending -= amount
            accepted += amount
        elif event.event_type == ApplicationEventType.WHITELIST_REJECT:
            committed -= amount
            pending -= amount
            refund_owed += amount
            owed_by_participant[event.participant] = (
                owed_by_participant.get(event.participant, 0) + amount
            )
        elif event.event_type == ApplicationEventType.PARTICIPANT_CANCEL:
            committed -= amount
            pending -= amount
        elif event.event_type == ApplicationEventType.CONTRIBUTION_CANCEL:
            owed = min(amount, owed_by_participant.get(event.participant, 0))
            owed_by_participant[event.participant] = (
                owed_by_participant.get(event.participant, 0) - owed
            )
            refund_owed -= owed
            committed -= amount - owed
            pending -= amount - owed
        elif event.event_type == ApplicationEventType.PARTICIPANT_WITHDRAW:
            withdrawn += amount
        elif event.event_type == ApplicationEventType.PROJECT_WITHDRAW:
            project_withdrawn += amount
        else:
            raise ValueError(f"Unknown application event type: {event.event_type}")

    return LedgerTotals(
        committed=committed,
        pending=pending,
        accepted=accepted,
        withdrawn=withdrawn,
        refund_owed=refund_owed,
        project_withdrawn=project_withdrawn,
    )


class ReversibleICOSaleInfo(NamedTuple):
    """General sale information."""

    initialized: bool
    frozen: bool
    token_uid: str
    stage_count: int
    commit_phase_start_block: int
    buy_phase_start_block: int
    buy_phase_end_block: int
    total_committed: int
    total_accepted: int
    total_withdrawn: int
    total_project_withdrawn: int
    participants: int
    contributions: int


class ReversibleICOParticipantInfo(NamedTuple):
    """Participant-specific information."""

    whitelist_status: int
    committed: int
    pending: int
    accepted: int
    withdrawn: int
    released: int
    reversible: int
    refund_owed: int
    tokens: int
    has_claimed: bool
    contributions: int


class ReversibleICOContributionInfo(NamedTuple):
    participant: Address
    block_number: int
    amount: int
    stage_index: int
    token_price: int
    tokens: int
    status: int
    remaining: int


class ReversibleICOTransferInfo(NamedTuple):
    transfer_type: int
    recipient: Address
    amount: int
    block_number: int


@export
class ReversibleICO(Blueprint):
    """Token sale whose accepted contributions stay reversible until the
    project withdraws them.

    The life cycle of contracts using this blueprint is the following:

    1. [Deployer] Create the contract.
    2. [Deployer] `init(...)` with the sale token supply and the stage table.
    3. [Participant] `commit()` HTR during the commit phase or any stage.
    4. [Whitelist controller] `approve(...)` or `reject(...)` participants.
    5. [Participant] `cancel()` pending funds or `withdraw()` accepted ones.
    6. [Project wallet] `project_withdraw()` funds from finished stages.
    7. [Participant] `claim_tokens()` once the last stage is over.
    """

    # Lifecycle and access control
    deployer: Address
    initialized: bool
    frozen: bool
    whitelist_controller: Address
    project_wallet: Address

    # Sale configuration
    token_uid: TokenUid
    commit_phase_start_block: int
    commit_phase_block_count: int
    commit_phase_price: int
    stage_count: int
    stage_block_count: int
    stage_price_increase: int
    buy_phase_start_block: int
    buy_phase_end_block: int

    # Stage table, index 0 is the commit phase
    stage_start_blocks: dict[int, int]
    stage_end_blocks: dict[int, int]
    stage_token_prices: dict[int, int]

    # Participants
    whitelist_status: dict[Address, int]
    participant_contributions: dict[Address, list[int]]
    committed_totals: dict[Address, Amount]
    pending_totals: dict[Address, Amount]
    accepted_totals: dict[Address, Amount]
    withdrawn_totals: dict[Address, Amount]
    released_totals: dict[Address, Amount]  # accepted funds claimed by the project
    refund_balances: dict[Address, Amount]  # whitelist-reject refunds owed
    token_balances: dict[Address, Amount]  # reserved, not yet claimed
    tokens_claimed: dict[Address, bool]
    participants_count: int

    # Contributions, keyed by contribution id
    contribution_count: int
    contribution_participant: dict[int, Address]
    contribution_block: dict[int, int]
    contribution_amount: dict[int, Amount]
    contribution_stage: dict[int, int]
    contribution_accept_stage: dict[int, int]  # stage in which the whitelist accepted it
    contribution_price: dict[int, int]
    contribution_tokens: dict[int, Amount]
    contribution_status: dict[int, int]
    contribution_remaining: dict[int, Amount]

    # Aggregates
    total_committed: Amount
    total_pending: Amount
    total_accepted: Amount
    total_withdrawn: Amount
    total_refund_owed: Amount
    total_project_withdrawn: Amount
    tokens_reserved: Amount

    # Balances held by the contract
    htr_balance: Amount
    sale_token_balance: Amount
    unsold_tokens_withdrawn: bool

    # Application event log
    event_count: int
    event_types: dict[int, int]
    event_participants: dict[int, Address]
    event_amounts: dict[int, Amount]
    event_blocks: dict[int, int]

    # Outbound HTR transfers
    transfer_count: int
    transfer_types: dict[int, int]
    transfer_recipients: dict[int, Address]
    transfer_amounts: dict[int, Amount]
    transfer_blocks: dict[int, int]

    @public
    def initialize(self, ctx: Context) -> None:
        """Deploy the sale. Configuration happens later through `init`."""
        self.deployer = Address(ctx.caller_id)
        self.initialized = False
        self.frozen = False

        self.commit_phase_start_block = 0
        self.commit_phase_block_count = 0
        self.commit_phase_price = 0
        self.stage_count = 0
        self.stage_block_count = 0
        self.stage_price_increase = 0
        self.buy_phase_start_block = 0
        self.buy_phase_end_block = 0

        self.stage_start_blocks = {}
        self.stage_end_blocks = {}
        self.stage_token_prices = {}

        self.whitelist_status = {}
        self.participant_contributions = {}
        self.committed_totals = {}
        self.pending_totals = {}
        self.accepted_totals = {}
        self.withdrawn_totals = {}
        self.released_totals = {}
        self.refund_balances = {}
        self.token_balances = {}
        self.tokens_claimed = {}
        self.participants_count = 0

        self.contribution_count = 0
        self.contribution_participant = {}
        self.contribution_block = {}
        self.contribution_amount = {}
        self.contribution_stage = {}
        self.contribution_accept_stage = {}
        self.contribution_price = {}
        self.contribution_tokens = {}
        self.contribution_status = {}
        self.contribution_remaining = {}

        self.total_committed = Amount(0)
        self.total_pending = Amount(0)
        self.total_accepted = Amount(0)
        self.total_withdrawn = Amount(0)
        self.total_refund_owed = Amount(0)
        self.total_project_withdrawn = Amount(0)
        self.tokens_reserved = Amount(0)

        self.htr_balance = Amount(0)
        self.sale_token_balance = Amount(0)
        self.unsold_tokens_withdrawn = False

        self.event_count = 0
        self.event_types = {}
        self.event_participants = {}
        self.event_amounts = {}
        self.event_blocks = {}

        self.transfer_count = 0
        self.transfer_types = {}
        self.transfer_recipients = {}
        self.transfer_amounts = {}
        self.transfer_blocks = {}

    @public(allow_deposit=True)
    def init(
        self,
        ctx: Context,
        token_uid: TokenUid,
        whitelist_controller: Address,
        project_wallet: Address,
        commit_phase_start_block: int,
        commit_phase_block_count: int,
        commit_phase_price: int,
        stage_count: int,
        stage_block_count: int,
        stage_price_increase: int,
    ) -> None:
        """Configure the sale and deposit the token supply being sold."""
        if self.initialized:
            raise AlreadyInitialized(ReversibleICOErrors.ALREADY_INITIALIZED)
        self._only_deployer(ctx)

        if commit_phase_start_block <= self._get_current_block_number(ctx):
            raise InvalidInput("Commit phase must start after the current block")
        if commit_phase_block_count <= 0 or stage_block_count <= 0:
            raise InvalidInput("Block counts must be positive")
        if stage_count < 1 or stage_count > MAX_STAGE_COUNT:
            raise InvalidInput("Invalid stage count")
        if commit_phase_price <= 0 or stage_price_increase <= 0:
            raise InvalidInput("Prices must be positive")

        action = self._get_single_deposit_action(ctx, token_uid)
        if action.amount <= 0:
            raise InvalidAmount(ReversibleICOErrors.INVALID_AMOUNT)

        self.token_uid = token_uid
        self.whitelist_controller = whitelist_controller
        self.project_wallet = project_wallet
        self.commit_phase_start_block = commit_phase_start_block
        self.commit_phase_block_count = commit_phase_block_count
        self.commit_phase_price = commit_phase_price
        self.stage_count = stage_count
        self.stage_block_count = stage_block_count
        self.stage_price_increase = stage_price_increase

        schedule = self._get_schedule()
        for index, stage in enumerate(schedule.stages()):
            self.stage_start_blocks[index] = stage.start_block
            self.stage_end_blocks[index] = stage.end_block
            self.stage_token_prices[index] = stage.token_price

        # The buy phase starts on the block after the commit phase ends
        self.buy_phase_start_block = schedule.commit_phase_end_block + 1
        self.buy_phase_end_block = schedule.last_block

        self.sale_token_balance = Amount(action.amount)
        self.initialized = True

    @public
    def freeze(self, ctx: Context) -> None:
        """Block every fund movement until `unfreeze`."""
        self._require_initialized()
        self._only_deployer(ctx)
        if self.frozen:
            raise InvalidState(ReversibleICOErrors.SALE_FROZEN)
        self.frozen = True

    @public
    def unfreeze(self, ctx: Context) -> None:
        self._require_initialized()
        self._only_deployer(ctx)
        if not self.frozen:
            raise InvalidState(ReversibleICOErrors.NOT_FROZEN)
        self.frozen = False

    @public(allow_deposit=True)
    def commit(self, ctx: Context) -> None:
        """Commit HTR at the token price of the current stage."""
        self._require_initialized()
        stage_index = self._get_current_stage(ctx)
        block = self._get_current_block_number(ctx)
        self._require_not_frozen()

        participant = Address(ctx.caller_id)
        status = self.whitelist_status.get(participant, WhitelistStatus.PENDING)
        if status == WhitelistStatus.REJECTED:
            raise StatusLocked(ReversibleICOErrors.STATUS_LOCKED)

        action = self._get_single_deposit_action(ctx, TokenUid(HTR_UID))
        amount = Amount(action.amount)
        if amount <= 0:
            raise InvalidAmount(ReversibleICOErrors.INVALID_AMOUNT)

        if participant not in self.participant_contributions:
            self.participants_count += 1

        contribution_id = self._add_contribution(participant, block, amount, stage_index)
        self.committed_totals[participant] = Amount(
            self.committed_totals.get(participant, Amount(0)) + amount
        )
        self.total_committed = Amount(self.total_committed + amount)
        self.htr_balance = Amount(self.htr_balance + amount)

        if status == WhitelistStatus.APPROVED:
            self._accept_contribution(contribution_id, stage_index)
            self._log_event(
                ApplicationEventType.COMMITMENT_ACCEPTED, participant, amount, block
            )
        else:
            self.pending_totals[participant] = Amount(
                self.pending_totals.get(participant, Amount(0)) + amount
            )
            self.total_pending = Amount(self.total_pending + amount)
            self._log_event(ApplicationEventType.CONTRIBUTION_NEW, participant, amount, block)

    @public(allow_withdrawal=True)
    def cancel(self, ctx: Context) -> None:
        """Take back every contribution the whitelist has not accepted yet."""
        self._require_initialized()
        self._require_not_frozen()

        participant = Address(ctx.caller_id)
        pending = self.pending_totals.get(participant, Amount(0))
        if pending == 0:
            raise NothingToCancel(ReversibleICOErrors.NOTHING_TO_CANCEL)

        action = self._get_single_withdrawal_action(ctx, TokenUid(HTR_UID))
        if action.amount != pending:
            raise InvalidActions(f"Invalid withdrawal amount. Expected {pending}")

        block = self._get_current_block_number(ctx)
        self._cancel_pending_contributions(participant)
        self.htr_balance = Amount(self.htr_balance - pending)

        self._log_transfer(TransferType.PARTICIPANT_CANCEL, participant, pending, block)
        self._log_event(ApplicationEventType.PARTICIPANT_CANCEL, participant, pending, block)

    @public
    def approve(self, ctx: Context, participant: Address) -> None:
        """Whitelist a participant and accept its pending contributions."""
        self._require_initialized()
        self._only_whitelist_controller(ctx)

        status = self.whitelist_status.get(participant, WhitelistStatus.PENDING)
        if status == WhitelistStatus.REJECTED:
            raise StatusLocked(ReversibleICOErrors.STATUS_LOCKED)
        if status == WhitelistStatus.APPROVED:
            return

        # Acceptance needs a stage left in which the funds stay reversible
        block = self._get_current_block_number(ctx)
        if block < self.commit_phase_start_block:
            accept_stage = 0
        else:
            accept_stage = self._get_stage_at_block(block)

        self.whitelist_status[participant] = WhitelistStatus.APPROVED

        accepted = Amount(0)
        for contribution_id in self.participant_contributions.get(participant, []):
            if self.contribution_status[contribution_id] == ContributionStatus.PENDING:
                self._accept_contribution(contribution_id, accept_stage)
                accepted = Amount(accepted + self.contribution_amount[contribution_id])

        self.pending_totals[participant] = Amount(
            self.pending_totals.get(participant, Amount(0)) - accepted
        )
        self.total_pending = Amount(self.total_pending - accepted)

        self._log_event(ApplicationEventType.WHITELIST_APPROVE, participant, accepted, block)

    @public
    def reject(self, ctx: Context, participant: Address) -> None:
        """Reject a participant. Its pending funds become refundable."""
        self._require_initialized()
        self._only_whitelist_controller(ctx)

        status = self.whitelist_status.get(participant, WhitelistStatus.PENDING)
        if status == WhitelistStatus.APPROVED:
            raise StatusLocked(ReversibleICOErrors.STATUS_LOCKED)
        if status == WhitelistStatus.REJECTED:
            return

        self.whitelist_status[participant] = WhitelistStatus.REJECTED

        refunded = self._cancel_pending_contributions(participant)
        self.refund_balances[participant] = Amount(
            self.refund_balances.get(participant, Amount(0)) + refunded
        )
        self.total_refund_owed = Amount(self.total_refund_owed + refunded)

        block = self._get_current_block_number(ctx)
        self._log_event(ApplicationEventType.WHITELIST_REJECT, participant, refunded, block)

    @public(allow_withdrawal=True)
    def claim_refund(self, ctx: Context) -> None:
        """Collect whitelist-reject refunds and, once the sale is over,
        contributions the whitelist never decided on."""
        self._require_initialized()
        self._require_not_frozen()

        participant = Address(ctx.caller_id)
        block = self._get_current_block_number(ctx)

        owed = self.refund_balances.get(participant, Amount(0))
        unresolved = Amount(0)
        if self._is_sale_ended(block):
            unresolved = self.pending_totals.get(participant, Amount(0))

        total = Amount(owed + unresolved)
        if total == 0:
            raise NothingToCancel(ReversibleICOErrors.NOTHING_TO_REFUND)

        action = self._get_single_withdrawal_action(ctx, TokenUid(HTR_UID))
        if action.amount != total:
            raise InvalidActions(f"Invalid withdrawal amount. Expected {total}")

        if owed > 0:
            self.refund_balances[participant] = Amount(0)
            self.total_refund_owed = Amount(self.total_refund_owed - owed)
            self._log_transfer(TransferType.WHITELIST_REJECT, participant, owed, block)
        if unresolved > 0:
            self._cancel_pending_contributions(participant)
            self._log_transfer(TransferType.AUTOMATIC_REFUND, participant, unresolved, block)

        self.htr_balance = Amount(self.htr_balance - total)
        self._log_event(ApplicationEventType.CONTRIBUTION_CANCEL, participant, total, block)

    @public(allow_withdrawal=True)
    def withdraw(self, ctx: Context) -> None:
        """Reverse accepted funds, forfeiting tokens at the current stage price."""
        self._require_initialized()
        stage_index = self._get_current_stage(ctx)
        block = self._get_current_block_number(ctx)
        self._require_not_frozen()

        participant = Address(ctx.caller_id)
        action = self._get_single_withdrawal_action(ctx, TokenUid(HTR_UID))
        amount = Amount(action.amount)
        if amount <= 0:
            raise InvalidAmount(ReversibleICOErrors.INVALID_AMOUNT)
        if amount > self._get_reversible_balance(participant):
            raise InsufficientBalance(ReversibleICOErrors.INSUFFICIENT_BALANCE)

        current_price = self.stage_token_prices[stage_index]
        reserved = self.token_balances.get(participant, Amount(0))
        forfeited = Amount(min(reserved, self._ceil_div(amount * TOKEN_UNIT, current_price)))

        # Newest contributions are reversed first
        left = amount
        for contribution_id in reversed(self.participant_contributions[participant]):
            if left == 0:
                break
            if self.contribution_status[contribution_id] != ContributionStatus.ACCEPTED:
                continue
            taken = min(self.contribution_remaining[contribution_id], left)
            self._consume_contribution(contribution_id, Amount(taken))
            left -= taken

        self.withdrawn_totals[participant] = Amount(
            self.withdrawn_totals.get(participant, Amount(0)) + amount
        )
        self.total_withdrawn = Amount(self.total_withdrawn + amount)
        self.token_balances[participant] = Amount(reserved - forfeited)
        self.tokens_reserved = Amount(self.tokens_reserved - forfeited)
        self.htr_balance = Amount(self.htr_balance - amount)

        self._log_transfer(TransferType.PARTICIPANT_WITHDRAW, participant, amount, block)
        self._log_event(ApplicationEventType.PARTICIPANT_WITHDRAW, participant, amount, block)

    @public(allow_withdrawal=True)
    def project_withdraw(self, ctx: Context) -> None:
        """Release accepted funds from finished stages to the project wallet."""
        self._require_initialized()
        self._only_project_wallet(ctx)
        self._require_not_frozen()

        block = self._get_current_block_number(ctx)
        action = self._get_single_withdrawal_action(ctx, TokenUid(HTR_UID))
        amount = Amount(action.amount)
        if amount <= 0:
            raise InvalidAmount(ReversibleICOErrors.INVALID_AMOUNT)
        if amount > self._get_available_for_project_withdrawal(block):
            raise ExceedsAvailable(ReversibleICOErrors.EXCEEDS_AVAILABLE)

        # Oldest releasable contributions are released first
        stage_limit = self._get_release_stage_limit(block)
        left = amount
        for contribution_id in range(self.contribution_count):
            if left == 0:
                break
            if not self._is_releasable(contribution_id, stage_limit):
                continue
            taken = min(self.contribution_remaining[contribution_id], left)
            participant = self.contribution_participant[contribution_id]
            self._consume_contribution(contribution_id, Amount(taken))
            self.released_totals[participant] = Amount(
                self.released_totals.get(participant, Amount(0)) + taken
            )
            left -= taken

        self.total_project_withdrawn = Amount(self.total_project_withdrawn + amount)
        self.htr_balance = Amount(self.htr_balance - amount)

        self._log_transfer(TransferType.PROJECT_WITHDRAW, self.project_wallet, amount, block)
        self._log_event(ApplicationEventType.PROJECT_WITHDRAW, self.project_wallet, amount, block)

    @public(allow_withdrawal=True)
    def claim_tokens(self, ctx: Context) -> None:
        """Claim reserved tokens after the last stage is over."""
        self._require_initialized()
        self._require_not_frozen()
        if not self._is_sale_ended(self._get_current_block_number(ctx)):
            raise InvalidState(ReversibleICOErrors.SALE_NOT_ENDED)

        participant = Address(ctx.caller_id)
        if self.tokens_claimed.get(participant, False):
            raise InvalidState(ReversibleICOErrors.ALREADY_CLAIMED)

        tokens_due = self.token_balances.get(participant, Amount(0))
        if tokens_due == 0:
            raise InsufficientBalance(ReversibleICOErrors.NOTHING_TO_CLAIM)

        action = self._get_single_withdrawal_action(ctx, self.token_uid)
        if action.amount != tokens_due:
            raise InvalidActions(f"Invalid withdrawal amount. Expected {tokens_due}")

        self.tokens_claimed[participant] = True
        self.token_balances[participant] = Amount(0)
        self.tokens_reserved = Amount(self.tokens_reserved - tokens_due)
        self.sale_token_balance = Amount(self.sale_token_balance - tokens_due)

    @public(allow_withdrawal=True)
    def withdraw_unsold_tokens(self, ctx: Context) -> None:
        """Withdraw tokens no accepted contribution reserved (project wallet only).

        Participants can still claim their reserved tokens afterwards.
        """
        self._require_initialized()
        self._only_project_wallet(ctx)
        self._require_not_frozen()
        if not self._is_sale_ended(self._get_current_block_number(ctx)):
            raise InvalidState(ReversibleICOErrors.SALE_NOT_ENDED)
        if self.unsold_tokens_withdrawn:
            raise InvalidState("Unsold tokens already withdrawn")

        unsold_tokens = Amount(self.sale_token_balance - self.tokens_reserved)
        if unsold_tokens == 0:
            raise InsufficientBalance("No unsold tokens to withdraw")

        action = self._get_single_withdrawal_action(ctx, self.token_uid)
        if action.amount != unsold_tokens:
            raise InvalidActions(f"Invalid withdrawal amount. Expected {unsold_tokens}")

        self.sale_token_balance = Amount(self.sale_token_balance - unsold_tokens)
        self.unsold_tokens_withdrawn = True

    def _get_current_block_number(self, ctx: Context) -> int:
        return ctx.block.height

    def _get_schedule(self) -> StageSchedule:
        return StageSchedule(
            commit_phase_start_block=self.commit_phase_start_block,
            commit_phase_block_count=self.commit_phase_block_count,
            commit_phase_price=self.commit_phase_price,
            stage_count=self.stage_count,
            stage_block_count=self.stage_block_count,
            stage_price_increase=self.stage_price_increase,
        )

    def _get_stage_at_block(self, block: int) -> int:
        """Resolve `block` and check it against the stored stage table."""
        index = self._get_schedule().stage_at(block)
        if block < self.stage_start_blocks[index] or block > self.stage_end_blocks[index]:
            raise OutOfRange(ReversibleICOErrors.OUT_OF_RANGE)
        return index

    def _get_current_stage(self, ctx: Context) -> int:
        return self._get_stage_at_block(self._get_current_block_number(ctx))

    def _is_sale_ended(self, block: int) -> bool:
        return block > self.buy_phase_end_block

    def _get_sale_state(self, block: int) -> int:
        if not self.initialized:
            return SaleState.UNINITIALIZED
        if block < self.commit_phase_start_block:
            return SaleState.INITIALIZED
        if self._is_sale_ended(block):
            return SaleState.ENDED
        return SaleState.RUNNING

    def _get_release_stage_limit(self, block: int) -> int:
        """Contributions from stages below the returned index can be released."""
        if block < self.commit_phase_start_block:
            return 0
        if self._is_sale_ended(block):
            return self.stage_count + 1
        return self._get_stage_at_block(block)

    def _is_releasable(self, contribution_id: int, stage_limit: int) -> bool:
        return (
            self.contribution_status[contribution_id] == ContributionStatus.ACCEPTED
            and self.contribution_accept_stage[contribution_id] < stage_limit
        )

    def _get_available_for_project_withdrawal(self, block: int) -> Amount:
        stage_limit = self._get_release_stage_limit(block)
        available = 0
        for contribution_id in range(self.contribution_count):
            if self._is_releasable(contribution_id, stage_limit):
                available += self.contribution_remaining[contribution_id]
        return Amount(available)

    def _get_reversible_balance(self, participant: Address) -> Amount:
        return Amount(
            self.accepted_totals.get(participant, Amount(0))
            - self.withdrawn_totals.get(participant, Amount(0))
            - self.released_totals.get(participant, Amount(0))
        )

    def _add_contribution(
        self, participant: Address, block: int, amount: Amount, stage_index: int
    ) -> int:
        price = self.stage_token_prices[stage_index]
        contribution_id = self.contribution_count

        self.contribution_participant[contribution_id] = participant
        self.contribution_block[contribution_id] = block
        self.contribution_amount[contribution_id] = amount
        self.contribution_stage[contribution_id] = stage_index
        self.contribution_price[contribution_id] = price
        self.contribution_tokens[contribution_id] = Amount(amount * TOKEN_UNIT // price)
        self.contribution_status[contribution_id] = ContributionStatus.PENDING
        self.contribution_remaining[contribution_id] = Amount(0)

        partial = self.participant_contributions.get(participant, [])
        partial.append(contribution_id)
        self.participant_contributions[participant] = partial

        self.contribution_count += 1
        return contribution_id

    def _accept_contribution(self, contribution_id: int, accept_stage: int) -> None:
        """Accept at the price recorded when the contribution was made.

        The funds become releasable to the project once `accept_stage` is over.
        """
        participant = self.contribution_participant[contribution_id]
        amount = self.contribution_amount[contribution_id]
        tokens = self.contribution_tokens[contribution_id]

        if self.tokens_reserved + tokens > self.sale_token_balance:
            raise SupplyExhausted(ReversibleICOErrors.SUPPLY_EXHAUSTED)

        self.contribution_status[contribution_id] = ContributionStatus.ACCEPTED
        self.contribution_remaining[contribution_id] = amount
        self.contribution_accept_stage[contribution_id] = accept_stage

        self.accepted_totals[participant] = Amount(
            self.accepted_totals.get(participant, Amount(0)) + amount
        )
        self.token_balances[participant] = Amount(
            self.token_balances.get(participant, Amount(0)) + tokens
        )
        self.total_accepted = Amount(self.total_accepted + amount)
        self.tokens_reserved = Amount(self.tokens_reserved + tokens)

    def _cancel_pending_contributions(self, participant: Address) -> Amount:
        cancelled = Amount(0)
        for contribution_id in self.participant_contributions.get(participant, []):
            if self.contribution_status[contribution_id] == ContributionStatus.PENDING:
                self.contribution_status[contribution_id] = ContributionStatus.CANCELLED
                cancelled = Amount(cancelled + self.contribution_amount[contribution_id])

        self.committed_totals[participant] = Amount(
            self.committed_totals.get(participant, Amount(0)) - cancelled
        )
        self.pending_totals[participant] = Amount(
            self.pending_totals.get(participant, Amount(0)) - cancelled
        )
        self.total_committed = Amount(self.total_committed - cancelled)
        self.total_pending = Amount(self.total_pending - cancelled)
        return cancelled

    def _consume_contribution(self, contribution_id: int, amount: Amount) -> None:
        remaining = Amount(self.contribution_remaining[contribution_id] - amount)
        self.contribution_remaining[contribution_id] = remaining
        if remaining == 0:
            self.contribution_status[contribution_id] = ContributionStatus.WITHDRAWN

    def _log_event(
        self, event_type: int, participant: Address, amount: Amount, block: int
    ) -> None:
        index = self.event_count
        self.event_types[index] = event_type
        self.event_participants[index] = participant
        self.event_amounts[index] = amount
        self.event_blocks[index] = block
        self.event_count += 1

    def _log_transfer(
        self, transfer_type: int, recipient: Address, amount: Amount, block: int
    ) -> None:
        index = self.transfer_count
        self.transfer_types[index] = transfer_type
        self.transfer_recipients[index] = recipient
        self.transfer_amounts[index] = amount
        self.transfer_blocks[index] = block
        self.transfer_count += 1

    def _get_single_deposit_action(
        self, ctx: Context, token_uid: TokenUid
    ) -> NCDepositAction:
        action = ctx.get_single_action(token_uid)
        if not isinstance(action, NCDepositAction):
            raise InvalidActions("Expected deposit action")
        return action

    def _get_single_withdrawal_action(
        self, ctx: Context, token_uid: TokenUid
    ) -> NCWithdrawalAction:
        action = ctx.get_single_action(token_uid)
        if not isinstance(action, NCWithdrawalAction):
            raise InvalidActions("Expected withdrawal action")
        return action

    def _require_initialized(self) -> None:
        if not self.initialized:
            raise InvalidState(ReversibleICOErrors.NOT_INITIALIZED)

    def _require_not_frozen(self) -> None:
        if self.frozen:
            raise SaleFrozen(ReversibleICOErrors.SALE_FROZEN)

    def _only_deployer(self, ctx: Context) -> None:
        if ctx.caller_id != self.deployer:
            raise Unauthorized(ReversibleICOErrors.UNAUTHORIZED)

    def _only_whitelist_controller(self, ctx: Context) -> None:
        if ctx.caller_id != self.whitelist_controller:
            raise Unauthorized(ReversibleICOErrors.UNAUTHORIZED)

    def _only_project_wallet(self, ctx: Context) -> None:
        if ctx.caller_id != self.project_wallet:
            raise Unauthorized(ReversibleICOErrors.UNAUTHORIZED)

    def _ceil_div(self, numerator: int, denominator: int) -> int:
        return (numerator + denominator - 1) // denominator

    def _get_event(self, index: int) -> ApplicationEvent:
        return ApplicationEvent(
            event_type=self.event_types[index],
            participant=self.event_participants[index],
            amount=self.event_amounts[index],
            block_number=self.event_blocks[index],
        )

    def _get_events(self) -> list[ApplicationEvent]:
        return [self._get_event(index) for index in range(self.event_count)]

    @view
    def get_sale_info(self) -> ReversibleICOSaleInfo:
        """Get general sale information."""
        return ReversibleICOSaleInfo(
            initialized=self.initialized,
            frozen=self.frozen,
            token_uid=self.token_uid.hex() if self.initialized else "",
            stage_count=self.stage_count,
            commit_phase_start_block=self.commit_phase_start_block,
            buy_phase_start_block=self.buy_phase_start_block,
            buy_phase_end_block=self.buy_phase_end_block,
            total_committed=self.total_committed,
            total_accepted=self.total_accepted,
            total_withdrawn=self.total_withdrawn,
            total_project_withdrawn=self.total_project_withdrawn,
            participants=self.participants_count,
            contributions=self.contribution_count,
        )

    @view
    def get_sale_state(self, block: int) -> int:
        return self._get_sale_state(block)

    @view
    def get_stage(self, index: int) -> Stage:
        self._require_initialized()
        if index not in self.stage_start_blocks:
            raise OutOfRange(ReversibleICOErrors.INVALID_STAGE)
        return Stage(
            start_block=self.stage_start_blocks[index],
            end_block=self.stage_end_blocks[index],
            token_price=self.stage_token_prices[index],
        )

    @view
    def get_stage_at_block(self, block: int) -> int:
        self._require_initialized()
        return self._get_stage_at_block(block)

    @view
    def get_price_at_block(self, block: int) -> int:
        self._require_initialized()
        return self.stage_token_prices[self._get_stage_at_block(block)]

    @view
    def get_available_for_project_withdrawal(self, block: int) -> int:
        self._require_initialized()
        return self._get_available_for_project_withdrawal(block)

    @view
    def get_participant_info(self, address: Address) -> ReversibleICOParticipantInfo:
        """Get participant-specific information."""
        return ReversibleICOParticipantInfo(
            whitelist_status=self.whitelist_status.get(address, WhitelistStatus.PENDING),
            committed=self.committed_totals.get(address, Amount(0)),
            pending=self.pending_totals.get(address, Amount(0)),
            accepted=self.accepted_totals.get(address, Amount(0)),
            withdrawn=self.withdrawn_totals.get(address, Amount(0)),
            released=self.released_totals.get(address, Amount(0)),
            reversible=self._get_reversible_balance(address),
            refund_owed=self.refund_balances.get(address, Amount(0)),
            tokens=self.token_balances.get(address, Amount(0)),
            has_claimed=self.tokens_claimed.get(address, False),
            contributions=len(self.participant_contributions.get(address, [])),
        )

    @view
    def get_contribution(self, contribution_id: int) -> ReversibleICOContributionInfo:
        if not 0 <= contribution_id < self.contribution_count:
            raise InvalidInput("Invalid contribution id")
        return ReversibleICOContributionInfo(
            participant=self.contribution_participant[contribution_id],
            block_number=self.contribution_block[contribution_id],
            amount=self.contribution_amount[contribution_id],
            stage_index=self.contribution_stage[contribution_id],
            token_price=self.contribution_price[contribution_id],
            tokens=self.contribution_tokens[contribution_id],
            status=self.contribution_status[contribution_id],
            remaining=self.contribution_remaining[contribution_id],
        )

    @view
    def get_event(self, index: int) -> ApplicationEvent:
        if not 0 <= index < self.event_count:
            raise InvalidInput("Invalid event index")
        return self._get_event(index)

    @view
    def get_transfer(self, index: int) -> ReversibleICOTransferInfo:
        if not 0 <= index < self.transfer_count:
            raise InvalidInput("Invalid transfer index")
        return ReversibleICOTransferInfo(
            transfer_type=self.transfer_types[index],
            recipient=self.transfer_recipients[index],
            amount=self.transfer_amounts[index],
            block_number=self.transfer_blocks[index],
        )

    @view
    def get_ledger_totals(self) -> LedgerTotals:
        return LedgerTotals(
            committed=self.total_committed,
            pending=self.total_pending,
            accepted=self.total_accepted,
            withdrawn=self.total_withdrawn,
            refund_owed=self.total_refund_owed,
            project_withdrawn=self.total_project_withdrawn,
        )

    @view
    def get_replayed_totals(self) -> LedgerTotals:
        """Ledger totals rebuilt from the event log alone."""
        return replay_application_events(self._get_events())
