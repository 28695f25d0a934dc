"""
test_phase_properties.py — Transition table properties

Properties:
  1. Only the single forward step is a legal transition.
  2. The trust bundle only grows until phase3, which drops exactly root A.
"""

import pytest

try:
    from hypothesis import given
    from hypothesis import strategies as st
except ImportError:
    pytest.skip("hypothesis not installed", allow_module_level=True)

from meshrotate.errors import InvalidTransitionError
from meshrotate.phases import PHASE_TABLE, Phase, check_transition

_phases = st.sampled_from(list(Phase))


@given(current=_phases, target=_phases)
def test_only_single_forward_step_is_legal(current, target):
    if target == current + 1:
        check_transition(current, target)
    else:
        with pytest.raises(InvalidTransitionError):
            check_transition(current, target)


@given(phase=st.sampled_from([Phase.INITIAL, Phase.PHASE1, Phase.PHASE2]))
def test_bundle_never_shrinks_before_phase3(phase):
    before = set(PHASE_TABLE[phase].bundle_roots)
    after = set(PHASE_TABLE[phase.next()].bundle_roots)
    if phase.next() is Phase.PHASE3:
        assert before - after == {"A"}
    else:
        assert before <= after
