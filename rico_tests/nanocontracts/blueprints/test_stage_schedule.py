import unittest

from rico.nanocontracts.blueprints.reversible_ico import (
    OutOfRange,
    ReversibleICOErrors,
    StageSchedule,
)

BLOCKS_PER_DAY = 6450


class StageScheduleTestCase(unittest.TestCase):
    """Stage table arithmetic, without a runner."""

    def setUp(self):
        self.schedule = StageSchedule(
            commit_phase_start_block=100_000,
            commit_phase_block_count=BLOCKS_PER_DAY * 22,
            commit_phase_price=2,
            stage_count=12,
            stage_block_count=BLOCKS_PER_DAY * 30,
            stage_price_increase=1,
        )

    def test_commit_phase_and_first_stage(self):
        commit_phase = self.schedule.stage(0)
        self.assertEqual(commit_phase.start_block, 100_000)
        self.assertEqual(commit_phase.end_block, 241_899)
        self.assertEqual(commit_phase.token_price, 2)

        first_stage = self.schedule.stage(1)
        self.assertEqual(first_stage.start_block, 241_900)
        self.assertEqual(first_stage.end_block, 419_899)
        self.assertEqual(first_stage.token_price, 3)

    def test_stages_are_contiguous(self):
        stages = self.schedule.stages()
        self.assertEqual(len(stages), 13)
        for previous, current in zip(stages, stages[1:]):
            self.assertEqual(previous.end_block + 1, current.start_block)
            self.assertGreater(current.token_price, previous.token_price)

        self.assertEqual(stages[0].start_block, self.schedule.first_block)
        self.assertEqual(stages[-1].end_block, self.schedule.last_block)

    def test_boundary_law(self):
        stages = self.schedule.stages()
        for index, stage in enumerate(stages):
            self.assertEqual(self.schedule.stage_at(stage.start_block), index)
            self.assertEqual(self.schedule.stage_at(stage.end_block), index)
            if index < self.schedule.stage_count:
                self.assertEqual(self.schedule.stage_at(stage.end_block + 1), index + 1)

    def test_stage_at_is_monotonic(self):
        previous = 0
        step = 997
        for block in range(self.schedule.first_block, self.schedule.last_block + 1, step):
            index = self.schedule.stage_at(block)
            self.assertGreaterEqual(index, previous)
            previous = index
        self.assertEqual(self.schedule.stage_at(self.schedule.last_block), 12)

    def test_outside_sale_period(self):
        with self.assertRaises(OutOfRange) as cm:
            self.schedule.stage_at(self.schedule.first_block - 1)
        self.assertEqual(str(cm.exception), ReversibleICOErrors.OUT_OF_RANGE)

        with self.assertRaises(OutOfRange):
            self.schedule.stage_at(self.schedule.last_block + 1)

        with self.assertRaises(OutOfRange):
            self.schedule.price_at(0)

    def test_invalid_stage_index(self):
        with self.assertRaises(OutOfRange) as cm:
            self.schedule.stage(13)
        self.assertEqual(str(cm.exception), ReversibleICOErrors.INVALID_STAGE)

        with self.assertRaises(OutOfRange):
            self.schedule.stage(-1)

    def test_price_at(self):
        self.assertEqual(self.schedule.price_at(100_000), 2)
        self.assertEqual(self.schedule.price_at(241_899), 2)
        self.assertEqual(self.schedule.price_at(241_900), 3)
        self.assertEqual(self.schedule.price_at(self.schedule.last_block), 14)

    def test_single_block_stages(self):
        schedule = StageSchedule(
            commit_phase_start_block=10,
            commit_phase_block_count=1,
            commit_phase_price=5,
            stage_count=3,
            stage_block_count=1,
            stage_price_increase=5,
        )
        self.assertEqual(schedule.last_block, 13)
        self.assertEqual([schedule.stage_at(block) for block in range(10, 14)], [0, 1, 2, 3])
        self.assertEqual(schedule.price_at(13), 20)


if __name__ == "__main__":
    unittest.main()
