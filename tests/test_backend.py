"""Tests for the compute backend and the max-reduction."""

import numpy as np
import pytest

from detection.backend import COMPUTE, RENDERER, BackendError, ComputeBackend
from detection.reduction import expected_passes, reduce_max


def square(ctx, out):
    (i,) = ctx.gid
    out[i] = i * i


def outer_sum(ctx, out):
    rows, cols = np.broadcast_arrays(*ctx.gid)
    np.add.at(out, rows, cols)


def explode(ctx, *args):
    raise RuntimeError("device lost")


@pytest.fixture
def backend():
    backend = ComputeBackend(max_lanes_per_batch=256)
    backend.register("square", square)
    backend.register("outer_sum", outer_sum)
    backend.register("explode", explode)
    return backend


class TestCommandQueue:
    """Tests for enqueue / finish ordering."""

    def test_work_runs_on_finish(self, backend):
        """Nothing executes until finish()."""
        out = backend.create_buffer("out", (1000,), np.int64)
        backend.dispatch("square", 1000, [out])

        assert backend.pending == ["dispatch:square"]
        assert not out.data.any()

        backend.finish()
        np.testing.assert_array_equal(out.data, np.arange(1000) ** 2)
        assert backend.pending == []

    def test_batches_cover_every_lane_once(self, backend):
        """A 2D launch larger than one batch visits each lane exactly once."""
        out = backend.create_buffer("out", (300,), np.int64)
        backend.dispatch("outer_sum", (300, 7), [out])
        backend.finish()

        np.testing.assert_array_equal(out.data, np.full(300, sum(range(7))))

    def test_write_then_read(self, backend):
        buffer = backend.create_buffer("data", (4, 4))
        backend.write_buffer(buffer, np.ones((2, 4)))

        result = backend.read_buffer(buffer)

        np.testing.assert_array_equal(result[:2], 1.0)
        np.testing.assert_array_equal(result[2:], 0.0)

    def test_write_snapshot_is_taken_at_enqueue(self, backend):
        """Changing the host array after write_buffer does not change the upload."""
        buffer = backend.create_buffer("data", (3,))
        host = np.array([1.0, 2.0, 3.0])
        backend.write_buffer(buffer, host)
        host[:] = 0.0

        np.testing.assert_array_equal(backend.read_buffer(buffer), [1.0, 2.0, 3.0])

    def test_write_rejects_wrong_shape(self, backend):
        buffer = backend.create_buffer("data", (3, 4))
        with pytest.raises(BackendError):
            backend.write_buffer(buffer, np.zeros((4, 4)))


class TestDispatchErrors:
    """Tests for argument and execution failures."""

    def test_unknown_kernel(self, backend):
        with pytest.raises(BackendError):
            backend.dispatch("missing", 10, [])

    def test_invalid_extent(self, backend):
        out = backend.create_buffer("out", (4,), np.int64)
        with pytest.raises(BackendError):
            backend.dispatch("square", 0, [out])

    def test_extent_not_multiple_of_local_size(self, backend):
        out = backend.create_buffer("out", (100,), np.int64)
        with pytest.raises(BackendError):
            backend.dispatch("square", 100, [out], local_size=64)

    def test_kernel_failure_is_wrapped_and_queue_discarded(self, backend):
        """A failing kernel surfaces as BackendError and drops the rest of the queue."""
        out = backend.create_buffer("out", (8,), np.int64)
        backend.dispatch("explode", 8, [out])
        backend.dispatch("square", 8, [out])

        with pytest.raises(BackendError, match="device lost"):
            backend.finish()

        assert backend.pending == []
        assert not out.data.any()


class TestSharedBuffer:
    """Tests for the acquire / release discipline."""

    def test_dispatch_requires_acquire(self, backend):
        positions = backend.create_shared("positions", (16,), np.int64)
        with pytest.raises(BackendError):
            backend.dispatch("square", 16, [positions])

    def test_renderer_locked_out_while_held(self, backend):
        positions = backend.create_shared("positions", (16,), np.int64)
        backend.acquire_shared(positions)
        backend.finish()

        assert positions.holder == COMPUTE
        with pytest.raises(BackendError):
            positions.renderer_view()
        with pytest.raises(BackendError):
            positions.renderer_write(np.ones(16))

        backend.release_shared(positions)
        backend.finish()
        assert positions.holder == RENDERER

    def test_double_acquire_rejected(self, backend):
        positions = backend.create_shared("positions", (16,))
        backend.acquire_shared(positions)
        with pytest.raises(BackendError):
            backend.acquire_shared(positions)

    def test_release_without_acquire_rejected(self, backend):
        positions = backend.create_shared("positions", (16,))
        with pytest.raises(BackendError):
            backend.release_shared(positions)

    def test_context_releases_after_work(self, backend):
        """Work inside the bracket is complete when the renderer gets the buffer back."""
        positions = backend.create_shared("positions", (16,), np.int64)
        with backend.shared(positions):
            backend.dispatch("square", 16, [positions])

        assert positions.holder == RENDERER
        np.testing.assert_array_equal(positions.renderer_view(), np.arange(16) ** 2)

    def test_context_hands_back_on_failure(self, backend):
        """A failed fit round still returns the buffer to the renderer."""
        positions = backend.create_shared("positions", (16,), np.int64)
        with pytest.raises(BackendError):
            with backend.shared(positions):
                backend.dispatch("explode", 16, [positions])
                backend.finish()

        assert positions.holder == RENDERER
        # The next round can acquire again
        with backend.shared(positions):
            backend.dispatch("square", 16, [positions])
        assert positions.renderer_view()[3] == 9

    def test_renderer_view_is_read_only(self, backend):
        positions = backend.create_shared("positions", (4, 4))
        view = positions.renderer_view()
        with pytest.raises(ValueError):
            view[0, 0] = 1.0


class TestReduction:
    """Tests for the parallel max-reduction."""

    def make(self, backend, scores, payload_width=4):
        scores = np.asarray(scores, dtype=np.int32)
        score_buffer = backend.create_buffer("scores", scores.shape, np.int32)
        payload = backend.create_buffer("payload", (len(scores), payload_width), np.float32)
        backend.write_buffer(score_buffer, scores)
        backend.write_buffer(payload, np.arange(len(scores) * payload_width).reshape(-1, payload_width))
        return score_buffer, payload

    def test_finds_maximum(self, backend):
        rng = np.random.default_rng(0)
        scores = rng.integers(0, 1000, size=5000)
        scores[1234] = 5000
        score_buffer, payload = self.make(backend, scores)

        result = reduce_max(backend, score_buffer, [payload], len(scores), group_size=64)

        assert result.score == 5000
        assert result.lane == 1234
        np.testing.assert_array_equal(backend.read_buffer(payload, rows=1)[0], [4936, 4937, 4938, 4939])

    def test_result_dominates_every_input(self, backend):
        rng = np.random.default_rng(1)
        scores = rng.integers(-50, 50, size=777)
        score_buffer, payload = self.make(backend, scores)

        result = reduce_max(backend, score_buffer, [payload], len(scores), group_size=8)

        assert result.score >= scores.max()
        assert result.score == scores[result.lane]

    def test_ties_go_to_lowest_lane(self, backend):
        """Equal maxima in different groups resolve to the lowest lane."""
        scores = np.zeros(300, dtype=np.int32)
        scores[[250, 70, 3]] = 9
        score_buffer, payload = self.make(backend, scores)

        result = reduce_max(backend, score_buffer, [payload], len(scores), group_size=64)

        assert result.lane == 3

    def test_all_equal_scores(self, backend):
        score_buffer, payload = self.make(backend, np.full(1000, 5))
        result = reduce_max(backend, score_buffer, [payload], 1000, group_size=4)
        assert (result.score, result.lane) == (5, 0)

    def test_order_independent(self, backend):
        """Permuting the inputs returns the same hypothesis."""
        rng = np.random.default_rng(2)
        scores = rng.permutation(2000)
        order = rng.permutation(2000)

        first_scores, first_payload = self.make(backend, scores)
        first = reduce_max(backend, first_scores, [first_payload], 2000)
        best = backend.read_buffer(first_payload, rows=1)[0]

        second_scores = backend.create_buffer("scores2", (2000,), np.int32)
        second_payload = backend.create_buffer("payload2", (2000, 4), np.float32)
        backend.write_buffer(second_scores, scores[order])
        backend.write_buffer(second_payload, np.arange(2000 * 4).reshape(-1, 4)[order])
        second = reduce_max(backend, second_scores, [second_payload], 2000)

        assert first.score == second.score == 1999
        np.testing.assert_array_equal(backend.read_buffer(second_payload, rows=1)[0], best)

    def test_pass_count(self, backend):
        """ceil(log_G N) passes."""
        score_buffer, payload = self.make(backend, np.arange(1000))
        result = reduce_max(backend, score_buffer, [payload], 1000, group_size=4)

        assert result.passes == 5
        assert expected_passes(1000, 4) == 5
        assert expected_passes(4096, 64) == 2
        assert expected_passes(4097, 64) == 3
        assert expected_passes(1, 64) == 0

    def test_reduces_prefix_only(self, backend):
        """Entries beyond count are ignored."""
        score_buffer, payload = self.make(backend, [1, 2, 3, 100])
        result = reduce_max(backend, score_buffer, [payload], 3, group_size=2)
        assert (result.score, result.lane) == (3, 2)

    def test_rejects_bad_count(self, backend):
        score_buffer, payload = self.make(backend, [1, 2, 3])
        with pytest.raises(BackendError):
            reduce_max(backend, score_buffer, [payload], 0)
        with pytest.raises(BackendError):
            reduce_max(backend, score_buffer, [payload], 4)
