from polycast.streaming.reconciliation import TranscriptReconciler, trim_word_overlap


def test_trim_word_overlap_removes_shared_boundary():
    text, k = trim_word_overlap("thank God for doctors", "God for doctors thank God for lawyers")
    assert k == 3
    assert text == "thank God for lawyers"


def test_trim_word_overlap_without_overlap_keeps_everything():
    text, k = trim_word_overlap("the quick brown fox", "jumps over the lazy dog")
    assert k == 0
    assert text == "jumps over the lazy dog"


def test_trim_word_overlap_ignores_single_word_match():
    text, k = trim_word_overlap("we went home", "home is where the heart is")
    assert k == 0
    assert text == "home is where the heart is"


def test_trim_word_overlap_is_case_sensitive():
    text, k = trim_word_overlap("said Hello World", "hello world again")
    assert k == 0
    assert text == "hello world again"


def test_trim_word_overlap_respects_max_bound():
    words = [f"w{i}" for i in range(20)]
    prev = " ".join(words)
    new = " ".join(words[-16:] + ["tail"])
    text, k = trim_word_overlap(prev, new, max_overlap=15)
    assert k == 0
    assert text == new

    text, k = trim_word_overlap(prev, " ".join(words[-15:] + ["tail"]), max_overlap=15)
    assert k == 15
    assert text == "tail"


def test_reconciler_previous_slot_is_replaced_not_accumulated():
    r = TranscriptReconciler()
    first = r.reconcile("one two three four", 1)
    assert first.text == "one two three four"
    second = r.reconcile("three four five six", 2)
    assert second.text == "five six"
    assert second.overlap_words == 2
    assert r.previous_final == "three four five six"
    third = r.reconcile("one two seven", 3)
    assert third.text == "one two seven"
    assert r.transcript() == "one two three four five six one two seven"


def test_reconciler_full_repeat_yields_empty_unit():
    r = TranscriptReconciler()
    r.reconcile("good morning everyone", 1)
    again = r.reconcile("good morning everyone", 2)
    assert again.is_empty
    assert again.overlap_words == 3
    assert r.snapshot()["committed_ids"] == [1]


def test_reconciler_partial_is_raw_and_cleared_by_final():
    r = TranscriptReconciler()
    r.reconcile("thank God for doctors", 1)
    assert r.set_partial("  God for doc ") == "God for doc"
    assert r.generating_text == "God for doc"
    assert r.previous_final == "thank God for doctors"
    r.reconcile("God for doctors thank God for lawyers", 2)
    assert r.generating_text == ""
