import os
import unittest

from hathor.nanocontracts.types import Address

from rico.nanocontracts.blueprints.reversible_ico import (
    ApplicationEvent,
    ApplicationEventType,
    LedgerTotals,
    replay_application_events,
)


def _address() -> Address:
    return Address(b"\x28" + os.urandom(24))


class EventReplayTestCase(unittest.TestCase):
    """Rebuilding ledger totals from the application event log."""

    def setUp(self):
        self.alice = _address()
        self.bob = _address()
        self.carol = _address()
        self.project = _address()

    def _event(self, event_type: int, participant: Address, amount: int, block: int = 1) -> ApplicationEvent:
        return ApplicationEvent(
            event_type=event_type,
            participant=participant,
            amount=amount,
            block_number=block,
        )

    def test_empty_log(self):
        self.assertEqual(replay_application_events([]), LedgerTotals(0, 0, 0, 0, 0, 0))

    def test_full_lifecycle(self):
        events = [
            self._event(ApplicationEventType.CONTRIBUTION_NEW, self.alice, 100_00),
            self._event(ApplicationEventType.CONTRIBUTION_NEW, self.bob, 50_00),
            self._event(ApplicationEventType.CONTRIBUTION_NEW, self.carol, 30_00),
            self._event(ApplicationEventType.WHITELIST_APPROVE, self.alice, 100_00),
            self._event(ApplicationEventType.COMMITMENT_ACCEPTED, self.alice, 20_00),
            self._event(ApplicationEventType.WHITELIST_REJECT, self.bob, 50_00),
            self._event(ApplicationEventType.PARTICIPANT_CANCEL, self.carol, 30_00),
            self._event(ApplicationEventType.PARTICIPANT_WITHDRAW, self.alice, 10_00),
            self._event(ApplicationEventType.PROJECT_WITHDRAW, self.project, 40_00),
        ]

        totals = replay_application_events(events)
        self.assertEqual(totals.committed, 120_00)
        self.assertEqual(totals.pending, 0)
        self.assertEqual(totals.accepted, 120_00)
        self.assertEqual(totals.withdrawn, 10_00)
        self.assertEqual(totals.refund_owed, 50_00)
        self.assertEqual(totals.project_withdrawn, 40_00)

    def test_refund_claim_pays_reject_refund_first(self):
        events = [
            self._event(ApplicationEventType.CONTRIBUTION_NEW, self.bob, 50_00),
            self._event(ApplicationEventType.WHITELIST_REJECT, self.bob, 50_00),
            self._event(ApplicationEventType.CONTRIBUTION_CANCEL, self.bob, 50_00),
        ]
        totals = replay_application_events(events)
        self.assertEqual(totals.refund_owed, 0)
        self.assertEqual(totals.committed, 0)
        self.assertEqual(totals.pending, 0)

    def test_refund_claim_of_unresolved_contributions(self):
        # Never decided on by the whitelist, refunded after the sale
        events = [
            self._event(ApplicationEventType.CONTRIBUTION_NEW, self.carol, 30_00),
            self._event(ApplicationEventType.CONTRIBUTION_NEW, self.carol, 5_00),
            self._event(ApplicationEventType.CONTRIBUTION_CANCEL, self.carol, 35_00),
        ]
        totals = replay_application_events(events)
        self.assertEqual(totals, LedgerTotals(0, 0, 0, 0, 0, 0))

    def test_replay_is_idempotent(self):
        events = [
            self._event(ApplicationEventType.CONTRIBUTION_NEW, self.alice, 7_00),
            self._event(ApplicationEventType.WHITELIST_APPROVE, self.alice, 7_00),
            self._event(ApplicationEventType.PARTICIPANT_WITHDRAW, self.alice, 3_00),
        ]
        first = replay_application_events(events)
        second = replay_application_events(events)
        self.assertEqual(first, second)
        self.assertEqual(len(events), 3)

    def test_unknown_event_type(self):
        with self.assertRaises(ValueError):
            replay_application_events([self._event(ApplicationEventType.NOT_SET, self.alice, 1)])
        with self.assertRaises(ValueError):
            replay_application_events([self._event(99, self.alice, 1)])


if __name__ == "__main__":
    unittest.main()
