import pytest

from satprep.errors import MissingResponse, MissingSelection, UnsupportedType
from satprep.utils.answer_keys import FreeTextKey, MultiChoiceKey, SingleChoiceKey
from satprep.utils.grading import Submission, grade

KEY = FreeTextKey(accepted=("11", "-7"))


@pytest.mark.parametrize("response", ["11", " 11 ", "-7", "−7", "  −7 "])
def test_free_text_accepts_any_variant(response):
    assert grade("spr", Submission(response_text=response), KEY) is True


def test_free_text_is_case_insensitive():
    key = FreeTextKey(accepted=("Pi/2",))
    assert grade("spr", Submission(response_text="PI/2"), key) is True


def test_free_text_wrong_answer():
    assert grade("spr", Submission(response_text="12"), KEY) is False


def test_free_text_with_no_accepted_answers_is_false():
    assert grade("spr", Submission(response_text="12"), FreeTextKey(accepted=())) is False


@pytest.mark.parametrize("response", [None, "", "   "])
def test_free_text_requires_response(response):
    with pytest.raises(MissingResponse):
        grade("spr", Submission(response_text=response), KEY)


def test_single_choice_exact_match():
    key = SingleChoiceKey(option_id="O2")
    assert grade("mcq", Submission(selected_option_id="O2"), key) is True
    assert grade("mcq", Submission(selected_option_id="O1"), key) is False
    assert grade("mcq", Submission(selected_option_id="o2"), key) is False


@pytest.mark.parametrize("selected", [None, ""])
def test_single_choice_requires_selection(selected):
    with pytest.raises(MissingSelection):
        grade("mcq", Submission(selected_option_id=selected), SingleChoiceKey(option_id="O2"))


def test_multi_choice_membership():
    key = MultiChoiceKey(option_ids=frozenset({"O1", "O3"}))
    assert grade("mcq", Submission(selected_option_id="O3"), key) is True
    assert grade("mcq", Submission(selected_option_id="O2"), key) is False


def test_unknown_type_is_rejected():
    with pytest.raises(UnsupportedType):
        grade("essay", Submission(response_text="x"), KEY)


def test_grading_is_deterministic():
    results = {grade("spr", Submission(response_text="−7"), KEY) for _ in range(5)}
    assert results == {True}
