import pytest

from shipyard_common.errors import StateTransitionError
from shipyard_common.models import BuildAndDeploy, OverallStatus, ProjectStage
from shipyard_common.reporter import StatusReporter, check_transition
from shipyard_common.store import MemoryJobStore

pytestmark = pytest.mark.unit


@pytest.fixture
def reporter():
    return StatusReporter(MemoryJobStore(log_cap=100))


@pytest.fixture
def tracker(reporter):
    dep = BuildAndDeploy(deployment_id="d1", projects=["a", "b"], branch="main", triggered_by="ci")
    return reporter.track(dep)


@pytest.mark.parametrize("current,new", [
    (ProjectStage.PENDING, ProjectStage.CLONING),
    (ProjectStage.CLONING, ProjectStage.BUILDING),
    (ProjectStage.BUILDING, ProjectStage.BUILDING),
    (ProjectStage.UPLOADING, ProjectStage.FAILED),
    (ProjectStage.PENDING, ProjectStage.FAILED),
    (ProjectStage.CONFIGURING, ProjectStage.COMPLETED),
])
def test_allowed_transitions(current, new):
    check_transition(current, new)


@pytest.mark.parametrize("current,new", [
    (ProjectStage.BUILDING, ProjectStage.CLONING),
    (ProjectStage.FAILED, ProjectStage.BUILDING),
    (ProjectStage.FAILED, ProjectStage.FAILED),
    (ProjectStage.COMPLETED, ProjectStage.FAILED),
])
def test_rejected_transitions(current, new):
    with pytest.raises(StateTransitionError):
        check_transition(current, new)


def test_every_change_is_persisted_whole(tracker, reporter):
    tracker.start()
    assert reporter.load("d1").overall == OverallStatus.IN_PROGRESS

    tracker.stage(["a", "b"], ProjectStage.CLONING, "acquiring source")
    tracker.project("a", ProjectStage.CLONING, "source ready", 100)

    st = reporter.load("d1")
    assert st.projects["a"].progress == 100
    assert st.projects["b"].stage == ProjectStage.CLONING
    assert st.projects["b"].progress == 0


def test_complete_derives_partial_success(tracker, reporter):
    tracker.start()
    tracker.stage(["a", "b"], ProjectStage.CLONING, "acquiring source")
    tracker.fail_project("b", "build failed", "exit 1")
    tracker.project("a", ProjectStage.COMPLETED, "deployed", 100)

    assert tracker.active() == ["a"]
    assert tracker.failed() == ["b"]
    assert tracker.complete("deployed 1/2 projects") == OverallStatus.PARTIAL_SUCCESS

    st = reporter.load("d1")
    assert st.overall == OverallStatus.PARTIAL_SUCCESS
    assert st.end_time is not None
    assert st.projects["b"].error == "exit 1"


def test_fail_leaves_an_error_log(tracker, reporter):
    tracker.start()
    tracker.fail("deployment failed during building: boom")

    assert reporter.load("d1").overall == OverallStatus.FAILED
    logs = reporter.logs("d1")
    assert [e.level for e in logs] == ["info", "error"]
    assert logs[-1].message.startswith("deployment failed")


def test_unknown_deployment(reporter):
    assert reporter.load("nope") is None
    assert reporter.logs("nope") == []
