from smr.labels import LabelMutator
from smr.models import ORIGIN_ANNOTATION, PREVIOUS_ORIGIN_ANNOTATION, ResourceId

RID = ResourceId("default", "merger")


def test_ensure_merged_labels_once(store):
    store.add_app("a", 80)
    m = LabelMutator(store, RID)

    assert m.ensure_merged("a-deploy", "a") is True
    assert store.deployment("a-deploy").template_labels == {"name": "a", "merge": "true"}

    # Same pass: deduplicated without even reading the deployment.
    assert m.ensure_merged("a-deploy", "a") is False
    assert m.writes == 1


def test_ensure_merged_twice_across_passes_issues_no_write(store):
    store.add_app("a", 80)
    LabelMutator(store, RID).ensure_merged("a-deploy", "a")
    writes = len(store.writes)

    again = LabelMutator(store, RID)
    assert again.ensure_merged("a-deploy", "a") is False
    assert again.writes == 0
    assert len(store.writes) == writes


def test_origin_label_added_by_merge_is_removed_on_release(store):
    store.add_app("a", 80, labels={"app": "alpha"})

    LabelMutator(store, RID).ensure_merged("a-deploy", "a")
    dep = store.deployment("a-deploy")
    assert dep.template_labels == {"app": "alpha", "name": "a", "merge": "true"}
    assert dep.annotations[ORIGIN_ANNOTATION] == "added"

    assert LabelMutator(store, RID).ensure_released("a-deploy") is True
    dep = store.deployment("a-deploy")
    assert dep.template_labels == {"app": "alpha"}
    assert ORIGIN_ANNOTATION not in dep.annotations


def test_pre_existing_origin_label_survives_release(store):
    store.add_app("a", 80)
    LabelMutator(store, RID).ensure_merged("a-deploy", "a")

    LabelMutator(store, RID).ensure_released("a-deploy")
    assert store.deployment("a-deploy").template_labels == {"name": "a"}


def test_ensure_released_is_idempotent(store):
    store.add_app("a", 80)
    m = LabelMutator(store, RID)
    assert m.ensure_released("a-deploy") is False
    assert m.writes == 0
    assert store.writes == []


def test_release_then_merge_in_one_pass(store):
    store.add_app("a", 80)
    LabelMutator(store, RID).ensure_merged("a-deploy", "a")

    m = LabelMutator(store, RID)
    assert m.ensure_released("a-deploy") is True
    assert m.ensure_merged("a-deploy", "a") is True
    assert store.deployment("a-deploy").template_labels["merge"] == "true"


def test_vanished_deployment_is_skipped(store):
    m = LabelMutator(store, RID)
    assert m.ensure_merged("ghost-deploy", "ghost") is False
    assert m.ensure_released("ghost-deploy") is False
    assert store.writes == []


def test_merge_restarts_pods(store):
    store.add_app("a", 80, replicas=2)
    before = {p.name for p in store.pods()}

    LabelMutator(store, RID).ensure_merged("a-deploy", "a")

    after = store.pods()
    assert len(after) == 2
    assert before.isdisjoint({p.name for p in after})
    assert all(p.labels["merge"] == "true" for p in after)


def test_replaced_origin_label_is_restored_on_release(store):
    store.add_app("y", 81, labels={"app": "y", "name": "frontend"})

    LabelMutator(store, RID).ensure_merged("y-deploy", "y")
    dep = store.deployment("y-deploy")
    assert dep.template_labels == {"app": "y", "name": "y", "merge": "true"}
    assert dep.annotations == {PREVIOUS_ORIGIN_ANNOTATION: "frontend"}

    assert LabelMutator(store, RID).ensure_released("y-deploy") is True
    dep = store.deployment("y-deploy")
    assert dep.template_labels == {"app": "y", "name": "frontend"}
    assert dep.annotations == {}


def test_remerge_under_another_service_keeps_the_first_original(store):
    store.add_app("a", 80, labels={"app": "alpha"})
    LabelMutator(store, RID).ensure_merged("a-deploy", "a")
    LabelMutator(store, RID).ensure_merged("a-deploy", "b")

    dep = store.deployment("a-deploy")
    assert dep.template_labels["name"] == "b"
    assert dep.annotations == {ORIGIN_ANNOTATION: "added"}

    LabelMutator(store, RID).ensure_released("a-deploy")
    assert store.deployment("a-deploy").template_labels == {"app": "alpha"}
