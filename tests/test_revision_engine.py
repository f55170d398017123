"""Tests for the copy-on-write write path."""

from __future__ import annotations

from datetime import datetime

import pytest
from sqlalchemy.orm import Session

from chronicle.api import Chronicle
from chronicle.base import ChronicleError, InvariantViolation, PersistenceFailure, Skipped
from chronicle.models.revision import Revision
from chronicle.registry import EntityRegistry, RevisionOptions
from chronicle.relations import owned_many
from chronicle.revisions.lifecycle import RevisionState
from tests.support import Block, Comment, Page, Post


def fresh_chronicle(session, clock, **options):
    """A chronicle over Post alone, registered with ``options``."""
    registry = EntityRegistry()
    registry.register(
        Post,
        options=RevisionOptions(**options),
        relations=[owned_many("comments", Comment, foreign_key="post_id")],
    )
    registry.register(Comment)
    return Chronicle(session, registry, clock=clock)


# =============================================================================
# Create Tests
# =============================================================================


class TestCreate:
    """Creating an entity opens its lineage."""

    def test_create(self, chronicle, revision_count):
        post = chronicle.create(Post(title="Draft"))

        assert post.id is not None
        assert revision_count() == 1
        revision = chronicle.revision_of(post)
        assert revision.entity_id == post.id
        assert revision.lineage_id == revision.id

    def test_save_of_new_entity_creates(self, chronicle, revision_count):
        post = chronicle.save(Post(title="Draft"))
        assert post.id is not None
        assert revision_count() == 1

    def test_create_with_checkpoint(self, chronicle):
        checkpoint = chronicle.checkpoints.create_checkpoint("1.0")
        post = chronicle.create(Post(title="Draft"), checkpoint)
        assert chronicle.revision_of(post).checkpoint_id == checkpoint.id

    def test_created_at_option(self, session, clock):
        stamp = datetime(2020, 5, 1)
        chronicle = fresh_chronicle(session, clock, created_at=lambda post: stamp)
        post = chronicle.create(Post(title="Draft"))
        assert chronicle.revision_of(post).created_at == stamp


# =============================================================================
# Save Tests
# =============================================================================


class TestSave:
    """Saving a watched change produces a new row and revision."""

    def test_new_row_per_revision(self, chronicle, session, revision_count):
        post = chronicle.create(Post(title="v1", body="first"))
        old_id = post.id

        post.title = "v2"
        newer = chronicle.save(post)

        assert newer is not post
        assert newer.id != old_id
        assert newer.title == "v2"
        assert newer.body == "first"
        assert post.title == "v1"
        assert revision_count() == 2
        assert session.query(Post).count() == 2

    def test_chain_links_new_revision(self, chronicle):
        post = chronicle.create(Post(title="v1"))
        post.title = "v2"
        newer = chronicle.save(post)

        old_revision = chronicle.revision_of(post)
        new_revision = chronicle.revision_of(newer)
        assert new_revision.previous_revision_id == old_revision.id
        assert new_revision.lineage_id == old_revision.lineage_id
        assert chronicle.ledger.is_latest(new_revision)
        assert not chronicle.ledger.is_latest(old_revision)

    def test_unchanged_entity_is_returned(self, chronicle, revision_count):
        post = chronicle.create(Post(title="v1"))
        assert chronicle.save(post) is post
        assert revision_count() == 1

    def test_ignored_column_updates_in_place(self, chronicle, session, revision_count):
        post = chronicle.create(Post(title="v1"))
        post.views = 10

        assert chronicle.save(post) is post
        assert revision_count() == 1
        session.expire_all()
        assert session.get(Post, post.id).views == 10

    def test_ignored_block_status(self, chronicle, revision_count):
        page = chronicle.create(Page(title="Home"))
        block = chronicle.create(Block(page_id=page.id, title="Intro"))
        assert revision_count() == 2

        block.status = "published"
        block.published_by = "editor"
        assert chronicle.save(block) is block
        assert revision_count() == 2

    def test_ignored_columns_are_still_copied(self, chronicle):
        post = chronicle.create(Post(title="v1", views=7))
        post.title = "v2"
        assert chronicle.save(post).views == 7

    def test_missing_revision_is_recreated(self, chronicle, session, revision_count):
        post = Post(title="legacy")
        session.add(post)
        session.flush()
        assert revision_count() == 0

        post.title = "revised"
        newer = chronicle.save(post)

        assert revision_count() == 2
        assert chronicle.revision_of(newer).previous_revision_id == chronicle.revision_of(post).id

    def test_unsaved_entity_cannot_be_revisioned(self, chronicle):
        with pytest.raises(InvariantViolation):
            chronicle.perform_revision(Post(title="nowhere"))


# =============================================================================
# Unique Column Tests
# =============================================================================


class TestUniqueColumns:
    """Unique values move into the previous revision's metadata."""

    def test_unique_value_moves_to_metadata(self, chronicle, session):
        post = chronicle.create(Post(title="v1", slug="hello"))
        post.title = "v2"
        newer = chronicle.save(post)

        assert newer.slug == "hello"
        assert post.slug is None
        assert chronicle.metadata_of(post) == {"slug": "hello"}
        assert chronicle.metadata_of(newer) == {}

    def test_attribute_falls_back_to_metadata(self, chronicle):
        post = chronicle.create(Post(title="v1", slug="hello"))
        post.title = "v2"
        newer = chronicle.save(post)

        assert chronicle.attribute(post, "slug") == "hello"
        assert chronicle.attribute(newer, "slug") == "hello"
        assert chronicle.attribute(post, "title") == "v1"

    def test_changed_unique_value(self, chronicle):
        post = chronicle.create(Post(title="v1", slug="old"))
        post.slug = "new"
        newer = chronicle.save(post)

        assert newer.slug == "new"
        assert chronicle.metadata_of(post) == {"slug": "old"}

    def test_metadata_without_revision(self, chronicle, session):
        post = Post(title="legacy", slug="legacy")
        session.add(post)
        session.flush()
        assert chronicle.metadata_of(post) == {}

    def test_metadata_disabled(self, session, clock, registry):
        from chronicle.config import ChronicleConfig

        chronicle = Chronicle(
            session,
            registry,
            clock=clock,
            config=ChronicleConfig(store_unique_columns_on_revision=False),
        )
        post = chronicle.create(Post(title="v1"))
        post.title = "v2"
        chronicle.save(post)
        assert chronicle.metadata_of(post) == {}


# =============================================================================
# Copy Options Tests
# =============================================================================


class TestCopyOptions:
    """Excluded columns and defaults shape the new row."""

    def test_excluded_column_not_copied(self, session, clock):
        chronicle = fresh_chronicle(session, clock, excluded={"excerpt"})
        post = chronicle.create(Post(title="v1", excerpt="short"))
        post.title = "v2"
        newer = chronicle.save(post)

        assert newer.excerpt is None
        assert post.excerpt == "short"

    def test_defaults_applied(self, session, clock):
        chronicle = fresh_chronicle(session, clock, defaults={"views": 0})
        post = chronicle.create(Post(title="v1", views=42))
        post.title = "v2"
        assert chronicle.save(post).views == 0


# =============================================================================
# Guard Tests
# =============================================================================


class TestGuards:
    """Declined revisions write in place and return ``Skipped``."""

    def test_should_revision(self, session, clock, revision_count):
        chronicle = fresh_chronicle(
            session, clock, should_revision=lambda post: post.title != "frozen"
        )
        post = chronicle.create(Post(title="v1"))
        post.title = "frozen"

        result = chronicle.save(post)
        assert isinstance(result, Skipped)
        assert result.reason == "should_revision"
        assert not result
        assert revision_count() == 1

        session.expire_all()
        assert session.get(Post, post.id).title == "frozen"

    def test_revisioning_hook_declines(self, chronicle, hooks, revision_count):
        hooks.on(RevisionState.REVISIONING, lambda event: False, model=Post)
        post = chronicle.create(Post(title="v1"))
        post.title = "v2"

        result = chronicle.save(post)
        assert result.reason == "hook"
        assert result.entity is post
        assert revision_count() == 1

    def test_hook_for_other_model_ignored(self, chronicle, hooks, revision_count):
        hooks.on(RevisionState.REVISIONING, lambda event: False, model=Block)
        post = chronicle.create(Post(title="v1"))
        post.title = "v2"

        assert not isinstance(chronicle.save(post), Skipped)
        assert revision_count() == 2


# =============================================================================
# Lifecycle Hook Tests
# =============================================================================


class TestLifecycleHooks:
    """Hooks observe created, revisioned and failed writes."""

    def test_created_and_revisioned(self, chronicle, hooks):
        events = []
        hooks.on(RevisionState.CREATED, events.append)
        hooks.on(RevisionState.REVISIONED, events.append)

        post = chronicle.create(Post(title="v1"))
        post.title = "v2"
        newer = chronicle.save(post)

        assert [e.state for e in events] == [RevisionState.CREATED, RevisionState.REVISIONED]
        assert events[0].result is post
        assert events[1].entity is post
        assert events[1].result is newer
        assert events[1].revision.entity_id == newer.id

    def test_failed_write_rolls_back(self, chronicle, hooks, session, revision_count):
        failures = []
        hooks.on(RevisionState.FAILED, failures.append)
        post = chronicle.create(Post(title="v1"))
        post.title = None

        with pytest.raises(PersistenceFailure):
            chronicle.perform_revision(post)

        assert len(failures) == 1
        assert isinstance(failures[0].error, PersistenceFailure)
        # The rejected value is pending again and must not be flushed here.
        with session.no_autoflush:
            assert revision_count() == 1
            assert session.query(Post).count() == 1

    def test_failed_revision_keeps_pending_values(self, chronicle, revision_count):
        post = chronicle.create(Post(title="old", body="old"))
        post.body = "new body"
        post.title = None

        with pytest.raises(PersistenceFailure):
            chronicle.save(post)

        assert post.body == "new body"
        assert chronicle.engine.changed_columns(post) == {"body", "title"}

        post.title = "fixed"
        newer = chronicle.save(post)

        assert (newer.title, newer.body) == ("fixed", "new body")
        assert (post.title, post.body) == ("old", "old")
        assert revision_count() == 2

    def test_failed_revision_inside_caller_transaction(self, chronicle, session, revision_count):
        post = chronicle.create(Post(title="old", body="old"))

        with session.begin():
            post.body = "new body"
            post.title = None
            with pytest.raises(PersistenceFailure):
                chronicle.save(post)

            assert post.body == "new body"
            post.title = "fixed"
            newer = chronicle.save(post)

        assert newer.body == "new body"
        assert revision_count() == 2


# =============================================================================
# Delete And Restore Tests
# =============================================================================


class TestDeleteAndRestore:
    """Soft deletes are revisions; hard deletes repair the chain."""

    def test_soft_delete_creates_revision(self, chronicle, revision_count):
        post = chronicle.create(Post(title="v1"))
        trashed = chronicle.delete(post)

        assert trashed.deleted_at is not None
        assert post.deleted_at is None
        assert revision_count() == 2
        assert chronicle.query(Post).count() == 0
        assert chronicle.query(Post).with_trashed().count() == 1
        assert chronicle.query(Post).only_trashed().first() is trashed

    def test_restore_creates_revision(self, chronicle, revision_count):
        post = chronicle.create(Post(title="v1"))
        trashed = chronicle.delete(post)
        restored = chronicle.restore(trashed)

        assert restored.deleted_at is None
        assert revision_count() == 3
        assert chronicle.query(Post).first() is restored

    def test_force_delete_removes_row(self, chronicle, session, revision_count):
        post = chronicle.create(Post(title="v1"))
        post.title = "v2"
        newer = chronicle.save(post)

        assert chronicle.delete(newer, force=True) is None
        assert revision_count() == 1
        assert session.query(Post).count() == 1
        assert chronicle.ledger.is_latest(chronicle.revision_of(post))

    def test_force_delete_initial_rekeys_lineage(self, chronicle, session):
        post = chronicle.create(Post(title="v1"))
        post.title = "v2"
        newer = chronicle.save(post)

        chronicle.delete(post, force=True)

        revision = chronicle.revision_of(newer)
        session.refresh(revision)
        assert revision.previous_revision_id is None
        assert revision.lineage_id == revision.id
        assert chronicle.query(Post).first() is newer

    def test_hard_delete_without_soft_delete_column(self, chronicle, session):
        post = chronicle.create(Post(title="v1"))
        comment = chronicle.create(Comment(body="hi", post_id=post.id))
        chronicle.delete(comment)
        assert session.query(Comment).count() == 0

    def test_restore_requires_soft_deletes(self, chronicle):
        post = chronicle.create(Post(title="v1"))
        comment = chronicle.create(Comment(body="hi", post_id=post.id))
        with pytest.raises(ChronicleError):
            chronicle.restore(comment)


# =============================================================================
# Revision Ledger Consistency Tests
# =============================================================================


class TestConsistency:
    """Repeated revisions keep one latest revision per lineage."""

    def test_many_revisions(self, chronicle, session):
        post = chronicle.create(Post(title="v0", slug="post"))
        for i in range(1, 5):
            post.title = f"v{i}"
            post = chronicle.save(post)

        revision = chronicle.revision_of(post)
        lineage = chronicle.ledger.verify_lineage("posts", revision.lineage_id)
        assert len(lineage) == 5
        assert lineage[-1].id == revision.id

        session.expire_all()
        latest = session.query(Revision).filter(Revision.is_latest).all()
        assert [r.id for r in latest] == [revision.id]
        assert [p.title for p in chronicle.history(post)] == [f"v{i}" for i in range(5)]


# =============================================================================
# Commit Tests
# =============================================================================


class TestCommits:
    """Writes commit unless the caller holds a transaction."""

    def test_revision_outlives_session(self, file_engine, registry, clock):
        with Session(file_engine) as session:
            chronicle = Chronicle(session, registry, clock=clock)
            post = chronicle.create(Post(title="Draft"))
            post.title = "Published"
            chronicle.save(post)

        with Session(file_engine) as session:
            assert session.query(Revision).count() == 2
            assert sorted(p.title for p in session.query(Post)) == ["Draft", "Published"]

    def test_delete_and_restore_outlive_session(self, file_engine, registry, clock):
        with Session(file_engine) as session:
            chronicle = Chronicle(session, registry, clock=clock)
            post = chronicle.create(Post(title="Draft"))
            trashed = chronicle.delete(post)
            chronicle.restore(trashed)

            doomed = chronicle.create(Post(title="Doomed"))
            chronicle.delete(doomed, force=True)

        with Session(file_engine) as session:
            assert session.query(Revision).count() == 3
            assert session.query(Post).filter(Post.title == "Doomed").count() == 0

    def test_in_place_update_outlives_session(self, file_engine, registry, clock):
        with Session(file_engine) as session:
            chronicle = Chronicle(session, registry, clock=clock)
            post = chronicle.create(Post(title="Draft"))
            post.views = 10
            chronicle.save(post)

        with Session(file_engine) as session:
            assert session.query(Post).one().views == 10
            assert session.query(Revision).count() == 1

    def test_caller_transaction_is_left_open(self, file_engine, registry, clock):
        with Session(file_engine) as session:
            chronicle = Chronicle(session, registry, clock=clock)
            session.begin()
            post = chronicle.create(Post(title="Draft"))
            post.title = "Published"
            chronicle.save(post)

            assert session.in_transaction()
            session.rollback()

        with Session(file_engine) as session:
            assert session.query(Revision).count() == 0
            assert session.query(Post).count() == 0
