import asyncio
import io
import json

import pytest
from starlette.datastructures import FormData, Headers, UploadFile

from frag_service.conversion import ConversionMetadata, ConversionOptions, ConversionResult
from frag_service.errors import PayloadTooLargeError, ValidationError
from frag_service.uploads import (
    discard,
    fragments_response,
    is_ifc,
    options_from_form,
    pick_upload,
    staged_upload,
    staging_path,
)


def _upload(filename: str, data: bytes = b"ISO-10303-21;", content_type: str = "application/octet-stream") -> UploadFile:
    return UploadFile(io.BytesIO(data), filename=filename, headers=Headers({"content-type": content_type}))


@pytest.mark.parametrize(
    "filename, content_type, expected",
    [
        ("model.ifc", "application/octet-stream", True),
        ("MODEL.IFC", None, True),
        ("model.step", "application/x-step", True),
        ("model.obj", "text/plain", False),
        ("ifc", None, False),
        (None, None, False),
    ],
)
def test_is_ifc(filename, content_type, expected):
    assert is_ifc(filename, content_type) is expected


def test_pick_upload_requires_file():
    with pytest.raises(ValidationError, match="field name 'ifc'"):
        pick_upload(FormData([("name", "Acme")]))


def test_pick_upload_rejects_other_field():
    with pytest.raises(ValidationError, match="Unexpected field 'model'"):
        pick_upload(FormData([("model", _upload("a.ifc"))]))


def test_pick_upload_rejects_two_files():
    with pytest.raises(ValidationError, match="Unexpected field 'ifc'"):
        pick_upload(FormData([("ifc", _upload("a.ifc")), ("ifc", _upload("b.ifc"))]))


def test_pick_upload_rejects_wrong_type():
    with pytest.raises(ValidationError, match="Only IFC files are allowed"):
        pick_upload(FormData([("ifc", _upload("notes.txt", content_type="text/plain"))]))


def test_staging_paths_are_unique_and_confined(tmp_path):
    paths = {staging_path(tmp_path, "../../etc/model.ifc") for _ in range(200)}
    assert len(paths) == 200
    for p in paths:
        assert p.parent == tmp_path
        assert p.name.endswith("-model.ifc")


@pytest.mark.parametrize("stem", ["a" * 240, "\u00e9" * 200])
def test_staging_path_caps_long_names(tmp_path, stem):
    path = staging_path(tmp_path, stem + ".ifc")
    assert len(path.name.encode("utf-8")) <= 255
    assert path.name.endswith(stem[-10:] + ".ifc")
    path.write_bytes(b"ISO-10303-21;")
    assert path.read_bytes() == b"ISO-10303-21;"


def test_staged_upload_removes_file_on_success(tmp_path):
    upload = _upload("house.ifc", b"x" * 3000)

    async def scenario():
        async with staged_upload(upload, tmp_path, max_bytes=10_000) as path:
            assert path.read_bytes() == b"x" * 3000
            return path

    path = asyncio.run(scenario())
    assert not path.exists()
    assert list(tmp_path.iterdir()) == []


def test_staged_upload_removes_file_on_error(tmp_path):
    upload = _upload("house.ifc")

    async def scenario():
        async with staged_upload(upload, tmp_path) as path:
            assert path.exists()
            raise RuntimeError("engine down")

    with pytest.raises(RuntimeError, match="engine down"):
        asyncio.run(scenario())
    assert list(tmp_path.iterdir()) == []


def test_staged_upload_enforces_limit(tmp_path):
    upload = _upload("big.ifc", b"x" * 11)

    async def scenario():
        async with staged_upload(upload, tmp_path, max_bytes=10):
            pytest.fail("oversized upload was staged")

    with pytest.raises(PayloadTooLargeError, match="File too large"):
        asyncio.run(scenario())
    assert list(tmp_path.iterdir()) == []


def test_discard_tolerates_missing_and_logs_failures(tmp_path, caplog):
    discard(tmp_path / "gone.ifc")
    directory = tmp_path / "not-a-file"
    directory.mkdir()
    discard(directory)
    assert "Failed to delete temp file" in caplog.text
    assert directory.exists()


def test_options_defaults_from_filename():
    options = options_from_form(FormData([]), "Bridge.v2.ifc")
    assert options == ConversionOptions(coordinate_to_origin=True, name="Bridge.v2")


def test_options_explicit_name_and_flags():
    form = FormData(
        [
            ("name", "Acme"),
            ("coordinateToOrigin", "false"),
            ("includeProperties", "no"),
            ("excludedCategories", "10, 20"),
            ("excludedCategories", "30"),
        ]
    )
    options = options_from_form(form, "model.ifc")
    assert options.name == "Acme"
    assert options.coordinate_to_origin is False
    # only the literal "false" switches a flag off
    assert options.include_properties is True
    assert options.excluded_categories == frozenset({10, 20, 30})


@pytest.mark.parametrize("value", ["true", "False", "0", ""])
def test_coordinate_to_origin_only_disabled_by_literal_false(value):
    options = options_from_form(FormData([("coordinateToOrigin", value)]), "m.ifc")
    assert options.coordinate_to_origin is True


def test_options_reject_bad_categories():
    with pytest.raises(ValidationError, match="excludedCategories"):
        options_from_form(FormData([("excludedCategories", "1,wall")]), "m.ifc")


def _result(name: str) -> ConversionResult:
    options = ConversionOptions(name=name)
    metadata = ConversionMetadata(name=name, timestamp="2026-01-01T00:00:00Z", size=3, options=options)
    return ConversionResult(data=b"abc", metadata=metadata)


def test_fragments_response_headers():
    response = fragments_response(_result("Acme"))
    assert response.body == b"abc"
    assert response.media_type == "application/octet-stream"
    assert response.headers["content-disposition"] == 'attachment; filename="Acme.frag"'
    assert response.headers["content-length"] == "3"
    metadata = json.loads(response.headers["x-fragments-metadata"])
    assert metadata == {
        "name": "Acme",
        "timestamp": "2026-01-01T00:00:00Z",
        "size": 3,
        "options": {"coordinateToOrigin": True, "name": "Acme"},
    }


def test_fragments_response_non_ascii_name():
    response = fragments_response(_result("Büro"))
    disposition = response.headers["content-disposition"]
    assert 'filename="B_ro.frag"' in disposition
    assert "filename*=UTF-8''B%C3%BCro.frag" in disposition
