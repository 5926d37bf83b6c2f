"""
Tests for the institution registry and icon store
"""

import pytest

from cycle_ledger.errors import NotFoundError, ValidationError
from cycle_ledger.institutions import IconUpload, InstitutionManager
from cycle_ledger.storage import InMemoryStorage

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"


@pytest.fixture
def manager(tmp_path):
    return InstitutionManager(InMemoryStorage(), tmp_path / "uploads", icon_max_bytes=1024)


class TestInstitutions:
    """Test institution creation and lookup"""

    def test_create_without_icon(self, manager):
        institution = manager.create_institution("  Bank A ")

        assert institution.name == "Bank A"
        assert institution.icon_file_name is None
        assert manager.create_institution("Bank A").id == institution.id

    def test_name_required(self, manager):
        with pytest.raises(ValidationError):
            manager.create_institution("  ")
        with pytest.raises(ValidationError):
            manager.create_institution("x" * 256)

    def test_list_sorted_by_name(self, manager):
        for name in ("Zeta", "Alpha", "Mid"):
            manager.create_institution(name)
        assert [i.name for i in manager.list_institutions()] == ["Alpha", "Mid", "Zeta"]

    def test_resolve_institution_id(self, manager):
        assert manager.resolve_institution_id(None) is None
        assert manager.resolve_institution_id("   ") is None

        institution_id = manager.resolve_institution_id(" Bank B ")
        assert manager.get_institution(institution_id).name == "Bank B"
        assert manager.resolve_institution_id("Bank B") == institution_id


class TestIcons:
    """Test icon upload, lookup and cleanup"""

    def test_icon_saved_under_generated_name(self, manager):
        institution = manager.create_institution(
            "Bank A", IconUpload("../../logo.PNG", "image/png", PNG_BYTES)
        )

        assert institution.icon_file_name.endswith(".png")
        assert "/" not in institution.icon_file_name
        content, content_type = manager.get_institution_icon(institution.icon_file_name)
        assert content == PNG_BYTES
        assert content_type == "image/png"

    def test_icon_replaced_on_existing_institution(self, manager):
        first = manager.create_institution("Bank A")
        updated = manager.create_institution("Bank A", IconUpload("a.webp", "image/webp", b"data"))

        assert updated.id == first.id
        assert manager.get_institution(first.id).icon_file_name == updated.icon_file_name
        assert manager.get_institution_icon(updated.icon_file_name)[1] == "image/webp"

    def test_non_image_rejected(self, manager):
        with pytest.raises(ValidationError, match="must be an image"):
            manager.create_institution("Bank A", IconUpload("a.txt", "text/plain", b"hello"))
        assert manager.list_institutions() == []

    def test_oversized_icon_rejected(self, manager):
        with pytest.raises(ValidationError):
            manager.create_institution("Bank A", IconUpload("a.png", "image/png", b"x" * 1025))

    def test_unknown_extension_served_as_octet_stream(self, manager):
        institution = manager.create_institution("Bank A", IconUpload("icon", "image/x-icon", b"ico"))

        _, content_type = manager.get_institution_icon(institution.icon_file_name)
        assert content_type == "application/octet-stream"

    @pytest.mark.parametrize("file_name", ["../secret.png", "a/b.png", "..", ".", ""])
    def test_traversal_rejected(self, manager, file_name):
        with pytest.raises(ValidationError):
            manager.get_institution_icon(file_name)

    def test_missing_icon(self, manager):
        with pytest.raises(NotFoundError):
            manager.get_institution_icon("nothing.png")

    def test_orphan_cleanup(self, manager):
        kept = manager.create_institution("Bank A", IconUpload("a.png", "image/png", PNG_BYTES))
        upload_dir = manager.upload_dir
        (upload_dir / ".gitkeep").write_text("")
        (upload_dir / "stale.png").write_bytes(PNG_BYTES)

        orphans = manager.find_orphan_icons()
        assert [p.name for p in orphans] == ["stale.png"]
        assert (upload_dir / "stale.png").exists()

        removed = manager.clean_orphan_icons()
        assert [p.name for p in removed] == ["stale.png"]
        assert not (upload_dir / "stale.png").exists()
        assert (upload_dir / kept.icon_file_name).exists()
        assert (upload_dir / ".gitkeep").exists()

    def test_orphans_without_upload_dir(self, manager):
        assert manager.find_orphan_icons() == []
