"""
Unit tests for the backward sweep progress bar.
"""

from qvi_pde.utils.progress import RichProgressBar


def test_disabled_bar_is_a_no_op():
    with RichProgressBar(total=3, desc="sweep", disable=True) as bar:
        for step in range(3):
            bar.update(1)
            bar.set_postfix(t=f"{step:.4g}", its=2)
    assert bar._progress is None


def test_enabled_bar_tracks_completed_steps():
    with RichProgressBar(total=4, desc="sweep") as bar:
        bar.update(1)
        bar.set_postfix(t="0.75", its=3)
        bar.update(2)
        task = bar._progress.tasks[0]
        assert task.completed == 3
        assert task.fields["status"] == "t=0.75 its=3"
