# tests/test_protection.py
"""Tests for field encryption and recursive note protection."""
import base64
import hashlib

import pytest

from notetree.exceptions import (
    CascadeError,
    ErrorCode,
    NoteNotFoundError,
    ProtectionError,
)
from notetree.models.schema import AuditCategory, EntityName, NoteCandidate, generate_id
from notetree.services.protection import (
    ProtectionCodec,
    decrypt,
    encrypt,
    text_nonce,
    title_nonce,
)
from notetree.storage.base import transaction
from tests.fakes import OTHER_KEY, TEST_KEY


def _xor(a, b):
    return bytes(x ^ y for x, y in zip(a, b))


class TestProtectionCodec:
    """Tests for the AES-SIV field codec."""

    def test_round_trip(self):
        codec = ProtectionCodec(TEST_KEY)
        title, text = codec.encrypt_fields("note1", "Title", "Body with ünïcode")
        assert title != "Title"
        assert codec.decrypt_fields("note1", title, text) == ("Title", "Body with ünïcode")

    def test_empty_strings_round_trip(self):
        codec = ProtectionCodec(TEST_KEY)
        title, text = codec.encrypt_fields("note1", "", "")
        assert codec.decrypt_fields("note1", title, text) == ("", "")

    def test_nonces_are_deterministic_and_distinct(self):
        assert title_nonce("abc") == title_nonce("abc")
        assert title_nonce("abc") != text_nonce("abc")
        assert title_nonce("abc") != title_nonce("abd")
        assert len(title_nonce("abc")) == 16

    def test_same_plaintext_same_entity_same_ciphertext(self):
        codec = ProtectionCodec(TEST_KEY)
        assert codec.encrypt_fields("n", "t", "x") == codec.encrypt_fields("n", "t", "x")
        assert codec.encrypt_fields("n", "t", "x") != codec.encrypt_fields("m", "t", "x")

    def test_rewrites_under_same_nonce_do_not_share_keystream(self):
        codec = ProtectionCodec(TEST_KEY)
        first = b"attack at dawn!!"
        second = b"retreat at noon!"
        _, stored_first = codec.encrypt_fields("n1", "t", first.decode())
        _, stored_second = codec.encrypt_fields("n1", "t", second.decode())

        body_first = base64.b64decode(stored_first)[-len(first):]
        body_second = base64.b64decode(stored_second)[-len(second):]
        assert _xor(body_first, body_second) != _xor(first, second)

    def test_stored_value_does_not_reveal_plaintext_hash(self):
        plaintext = "salary 90000"
        title, _ = ProtectionCodec(TEST_KEY).encrypt_fields("n1", plaintext, "")
        blob = base64.b64decode(title)
        assert hashlib.sha256(plaintext.encode()).digest()[:4] not in blob
        assert plaintext.encode() not in blob

    def test_value_only_opens_for_its_own_field(self):
        title, _ = ProtectionCodec(TEST_KEY).encrypt_fields("n1", "Title", "Body")
        with pytest.raises(ProtectionError):
            decrypt(TEST_KEY, text_nonce("n1"), title)
        with pytest.raises(ProtectionError):
            decrypt(TEST_KEY, title_nonce("n2"), title)

    def test_wrong_key_fails(self):
        stored = encrypt(TEST_KEY, title_nonce("n"), "secret")
        with pytest.raises(ProtectionError) as exc_info:
            decrypt(OTHER_KEY, title_nonce("n"), stored)
        assert exc_info.value.code == ErrorCode.DECRYPTION_FAILED

    def test_decrypt_fields_reports_entity(self):
        title, text = ProtectionCodec(TEST_KEY).encrypt_fields("n1", "a", "b")
        with pytest.raises(ProtectionError) as exc_info:
            ProtectionCodec(OTHER_KEY).decrypt_fields("n1", title, text)
        assert exc_info.value.entity_id == "n1"

    def test_malformed_ciphertext(self):
        with pytest.raises(ProtectionError):
            decrypt(TEST_KEY, title_nonce("n"), "not base64!!")

    @pytest.mark.parametrize("key", [b"", b"short", bytes(33)])
    def test_invalid_key_length(self, key):
        with pytest.raises(ProtectionError) as exc_info:
            ProtectionCodec(key)
        assert exc_info.value.code == ErrorCode.DATA_KEY_INVALID

    def test_convert_is_noop_in_target_state(self):
        codec = ProtectionCodec(TEST_KEY)
        assert codec.convert("n", "a", "b", False, False) == ("a", "b", False)
        title, text, changed = codec.convert("n", "a", "b", False, True)
        assert changed is True
        assert codec.convert("n", title, text, True, True) == (title, text, False)
        assert codec.convert("n", title, text, True, False) == ("a", "b", True)

    def test_repr_hides_key(self):
        assert TEST_KEY.hex() not in repr(ProtectionCodec(TEST_KEY))


@pytest.fixture
def tree(make_note):
    """Root -> child -> grandchild, each with text and one history snapshot."""
    root = make_note("Root", text="root text")
    child = make_note("Child", parent=root.note_id, text="child text")
    grandchild = make_note("Grandchild", parent=child.note_id, text="grandchild text")
    return root, child, grandchild


def _add_placement(note_service, note_id, parent_note_id, clock):
    with transaction(note_service.session_factory, "test_placement") as session:
        note_service.placements.insert(
            session, generate_id(), note_id, parent_note_id, 99, clock.now
        )


class TestProtectRecursively:
    """Tests for NoteService.protect_recursively."""

    def test_protects_whole_subtree(self, note_service, context, tree):
        note_service.protect_recursively(tree[0].note_id, TEST_KEY, True, actor_id="alice")

        plaintexts = ["root text", "child text", "grandchild text"]
        for created, plaintext in zip(tree, plaintexts):
            stored = note_service.get_note(created.note_id, decrypt=False)
            assert stored.is_protected is True
            assert stored.text != plaintext
            for snapshot in note_service.get_history(created.note_id, decrypt=False):
                assert snapshot.is_protected is True

        note = note_service.get_note(tree[1].note_id, context)
        assert (note.title, note.text) == ("Child", "child text")

    def test_unprotect_restores_plaintext(self, note_service, tree):
        root = tree[0].note_id
        note_service.protect_recursively(root, TEST_KEY, True, actor_id="alice")
        note_service.protect_recursively(root, TEST_KEY, False, actor_id="alice")

        expected = [
            ("Root", "root text"),
            ("Child", "child text"),
            ("Grandchild", "grandchild text"),
        ]
        for created, (title, text) in zip(tree, expected):
            stored = note_service.get_note(created.note_id, decrypt=False)
            assert stored.is_protected is False
            assert (stored.title, stored.text) == (title, text)
            history = note_service.get_history(created.note_id, decrypt=False)
            assert [(h.title, h.text, h.is_protected) for h in history] == [
                (title, text, False)
            ]

    def test_only_subtree_is_touched(self, note_service, tree, make_note):
        outsider = make_note("Outside", text="plain")
        note_service.protect_recursively(tree[1].note_id, TEST_KEY, True, actor_id="alice")

        assert note_service.get_note(tree[0].note_id).is_protected is False
        assert note_service.get_note(tree[2].note_id).is_protected is True
        assert note_service.get_note(outsider.note_id).is_protected is False

    def test_second_run_is_noop(self, note_service, tree):
        root = tree[0].note_id
        note_service.protect_recursively(root, TEST_KEY, True, actor_id="alice")
        last_change = note_service.changes_since()[-1].id

        note_service.protect_recursively(root, TEST_KEY, True, actor_id="alice")

        assert note_service.changes_since(last_change) == []
        for created in tree:
            audits = note_service.get_audit_log(created.note_id, AuditCategory.PROTECTED)
            assert len(audits) == 1
            assert (audits[0].before_value, audits[0].after_value) == ("0", "1")

    def test_protect_records_note_and_history_changes(self, note_service, tree):
        note_id = tree[2].note_id
        before = note_service.changes_since()[-1].id
        note_service.protect_recursively(note_id, TEST_KEY, True, actor_id="alice")

        changes = note_service.changes_since(before)
        history_id = note_service.get_history(note_id)[0].history_id
        assert (EntityName.NOTES, note_id) in {(c.entity_name, c.entity_id) for c in changes}
        assert (EntityName.HISTORY, history_id) in {
            (c.entity_name, c.entity_id) for c in changes
        }

    def test_cycle_terminates(self, note_service, clock, make_note):
        a = make_note("A", text="a")
        b = make_note("B", parent=a.note_id, text="b")
        # Make A a child of B as well
        _add_placement(note_service, a.note_id, b.note_id, clock)

        note_service.protect_recursively(a.note_id, TEST_KEY, True, actor_id="alice")

        assert note_service.get_note(a.note_id).is_protected is True
        assert note_service.get_note(b.note_id).is_protected is True
        assert len(note_service.get_audit_log(a.note_id, AuditCategory.PROTECTED)) == 1

    def test_note_with_two_placements_visited_once(self, note_service, context, make_note):
        root = make_note("Root")
        shared = make_note("Shared", parent=root.note_id, text="s")
        note_service.clone_note(shared.note_id, root.note_id, context)

        note_service.protect_recursively(root.note_id, TEST_KEY, True, actor_id="alice")

        assert note_service.get_note(shared.note_id).is_protected is True
        audits = note_service.get_audit_log(shared.note_id, AuditCategory.PROTECTED)
        assert len(audits) == 1

    def test_deleted_children_are_included(self, note_service, context, make_note):
        root = make_note("Root")
        child = make_note("Child", parent=root.note_id, text="gone")
        note_service.delete_placement(child.placement_id, context)

        note_service.protect_recursively(root.note_id, TEST_KEY, True, actor_id="alice")

        stored = note_service.get_note(child.note_id, decrypt=False)
        assert stored.is_deleted is True
        assert stored.is_protected is True

    def test_audits_name_the_given_actor(self, note_service, tree):
        note_service.protect_recursively(tree[0].note_id, TEST_KEY, True, actor_id="bob")

        audits = note_service.get_audit_log(tree[2].note_id, AuditCategory.PROTECTED)
        assert [a.actor_id for a in audits] == ["bob"]

    def test_actor_is_required(self, note_service, tree):
        with pytest.raises(TypeError):
            note_service.protect_recursively(tree[0].note_id, TEST_KEY, True)

    def test_missing_key(self, note_service, tree):
        with pytest.raises(ProtectionError) as exc_info:
            note_service.protect_recursively(tree[0].note_id, None, True, actor_id="alice")
        assert exc_info.value.code == ErrorCode.DATA_KEY_MISSING

    def test_missing_root(self, note_service):
        with pytest.raises(NoteNotFoundError):
            note_service.protect_recursively("missing", TEST_KEY, True, actor_id="alice")

    def test_wrong_key_interrupts_cascade(self, note_service, tree):
        root = tree[0].note_id
        note_service.protect_recursively(root, TEST_KEY, True, actor_id="alice")

        with pytest.raises(CascadeError) as exc_info:
            note_service.protect_recursively(root, OTHER_KEY, False, actor_id="alice")

        error = exc_info.value
        assert error.failed_id == root
        assert error.completed_ids == []
        assert isinstance(error.original_error, ProtectionError)
        # The failed unit rolled back
        assert note_service.get_note(root).is_protected is True

    def test_failure_mid_cascade_keeps_completed_units(
        self, note_service, clock, make_note
    ):
        root = make_note("Root", text="r")
        # A placement whose note row does not exist
        _add_placement(note_service, "ghost", root.note_id, clock)

        with pytest.raises(CascadeError) as exc_info:
            note_service.protect_recursively(root.note_id, TEST_KEY, True, actor_id="alice")

        error = exc_info.value
        assert error.failed_id == "ghost"
        assert error.completed_ids == [root.note_id]
        assert error.operation == "protect_recursively"
        assert isinstance(error.__cause__, NoteNotFoundError)
        assert note_service.get_note(root.note_id).is_protected is True


class TestStoredCiphertext:
    """Successive protected edits of one note as they land in storage."""

    def test_successive_versions_do_not_leak_each_other(
        self, note_service, context, make_note
    ):
        note = make_note("Orders")
        first, second = "attack at dawn!!", "retreat at noon!"

        note_service.update_note(
            note.note_id, NoteCandidate(title="Orders", text=first, is_protected=True), context
        )
        stored_first = note_service.get_note(note.note_id, decrypt=False).text
        note_service.update_note(
            note.note_id, NoteCandidate(title="Orders", text=second, is_protected=True), context
        )
        stored_second = note_service.get_note(note.note_id, decrypt=False).text

        body_first = base64.b64decode(stored_first)[-len(first):]
        body_second = base64.b64decode(stored_second)[-len(second):]
        leaked = _xor(_xor(body_first, body_second), first.encode())
        assert leaked != second.encode()
        assert note_service.get_note(note.note_id, context).text == second
