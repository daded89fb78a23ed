import io
import os

from werkzeug.datastructures import FileStorage

from utils.uploads import (
    is_allowed_upload,
    matches_signature,
    remove_file,
    resolve_attachment_path,
    safe_download_name,
    save_upload,
)

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def _upload(data, filename, content_type):
    return FileStorage(stream=io.BytesIO(data), filename=filename, content_type=content_type)


def test_allow_list_checks_extension_and_mime():
    assert is_allowed_upload(_upload(PNG_BYTES, "scan.PNG", "image/png"))
    assert is_allowed_upload(_upload(b"%PDF-1.4", "work.pdf", "application/pdf"))
    assert not is_allowed_upload(_upload(b"MZ", "report.exe", "application/octet-stream"))
    assert not is_allowed_upload(_upload(b"MZ", "report.exe", "image/png"))
    assert not is_allowed_upload(_upload(PNG_BYTES, "scan.png", "text/plain"))


def test_save_and_signature(tmp_path):
    saved = save_upload(_upload(PNG_BYTES, "scan.png", "image/png"), str(tmp_path))
    assert saved["stored_name"].endswith(".png")
    assert saved["original_name"] == "scan.png"
    assert saved["size"] == len(PNG_BYTES)
    assert os.path.isfile(saved["full_path"])
    assert matches_signature(saved["full_path"], "image/png")
    assert not matches_signature(saved["full_path"], "application/pdf")
    remove_file(saved["full_path"])
    assert not os.path.exists(saved["full_path"])
    remove_file(saved["full_path"])


def test_resolve_attachment_path_stays_in_root(tmp_path):
    root = str(tmp_path)
    assert resolve_attachment_path(root, "a.png") == os.path.join(
        os.path.realpath(root), "a.png"
    )
    assert resolve_attachment_path(root, "../secret.txt") is None
    assert resolve_attachment_path(root, "/etc/passwd") is None
    assert resolve_attachment_path(root, None) is None


def test_safe_download_name():
    assert safe_download_name("Mein Test (1).pdf") == "Mein_Test__1_.pdf"
    assert safe_download_name("") == "attachment"
    assert len(safe_download_name("a" * 500)) == 120
