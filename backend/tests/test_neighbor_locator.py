"""
test_neighbor_locator.py — Same-row neighbor geometry.

Tests cover:
  - vertical tolerance (30% of target height)
  - the 500-unit horizontal gap limit, inclusive at the boundary
  - closest-first ordering and the three-per-side cap
  - expanded_box contains the target and every neighbor
"""

from conftest import make_detection
from shelfmatch.services.neighbor_locator import expanded_box, find_neighbors

# Target spans x 600–700, y 400–600 (height 200 → tolerance 60)
TARGET_BOX = (400, 600, 600, 700)


def _target():
    return make_detection(id="target", box=TARGET_BOX, brand="Unknown")


class TestFindNeighbors:

    def test_no_peers_gives_empty_context(self):
        target = _target()
        context = find_neighbors(target, [target])
        assert context.is_empty
        assert context.left == () and context.right == ()

    def test_left_and_right_on_same_row(self):
        left = make_detection(id="left", box=(410, 450, 590, 580))
        right = make_detection(id="right", box=(390, 720, 610, 850))
        context = find_neighbors(_target(), [left, right])
        assert [d.id for d in context.left] == ["left"]
        assert [d.id for d in context.right] == ["right"]

    def test_gap_of_exactly_500_is_included(self):
        """Left peer ends at x=100; gap to the target's left edge (600) is 500."""
        peer = make_detection(id="edge", box=(400, 0, 600, 100))
        context = find_neighbors(_target(), [peer])
        assert [d.id for d in context.left] == ["edge"]

    def test_gap_over_500_is_excluded(self):
        peer = make_detection(id="far", box=(400, 0, 600, 99))
        assert find_neighbors(_target(), [peer]).is_empty

    def test_different_row_is_excluded(self):
        """Centre 200 units above the target, far outside the 60-unit tolerance."""
        upper = make_detection(id="upper", box=(200, 450, 400, 580))
        assert find_neighbors(_target(), [upper]).is_empty

    def test_overlapping_peer_is_on_neither_side(self):
        overlap = make_detection(id="overlap", box=(400, 650, 600, 750))
        assert find_neighbors(_target(), [overlap]).is_empty

    def test_closest_first_and_capped_at_three(self):
        peers = [
            make_detection(id=f"r{i}", box=(400, 700 + i * 50, 600, 740 + i * 50))
            for i in range(5)
        ]
        context = find_neighbors(_target(), list(reversed(peers)))
        assert [d.id for d in context.right] == ["r0", "r1", "r2"]


class TestExpandedBox:

    def test_expanded_box_contains_all(self):
        target = _target()
        left = make_detection(id="left", box=(380, 450, 590, 580))
        right = make_detection(id="right", box=(420, 720, 630, 850))
        context = find_neighbors(target, [left, right])
        box = expanded_box(target, context)
        for d in (target, left, right):
            assert box.contains(d.box)
        assert box.as_list() == [380, 450, 630, 850]

    def test_expanded_box_without_neighbors_is_target_box(self):
        target = _target()
        assert expanded_box(target, find_neighbors(target, [])) == target.box
