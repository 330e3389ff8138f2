"""Unit tests for S3ArtifactStore.

boto3 is patched at the module level; the mocked client records every call
so key layout, content types and batching can be asserted directly.
"""

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from launchpad.core.exceptions import ArtifactStoreError
from launchpad.storage.artifact_store import (
    S3ArtifactStore,
    guess_content_type,
    output_key,
    output_prefix,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def s3_client():
    return MagicMock()


@pytest.fixture
def store(s3_client):
    with patch("launchpad.storage.artifact_store.boto3") as mock_boto3:
        mock_boto3.client.return_value = s3_client
        yield S3ArtifactStore(bucket="deployment-app-build", region="eu-north-1")


def _listing(keys, truncated=False, token=None):
    page = {"Contents": [{"Key": k} for k in keys], "IsTruncated": truncated}
    if token:
        page["NextContinuationToken"] = token
    return page


# ---------------------------------------------------------------------------
# Key layout and content types
# ---------------------------------------------------------------------------


def test_output_key_layout():
    assert output_prefix("demo123") == "__outputs/demo123/"
    assert output_key("demo123", "assets/app.js") == "__outputs/demo123/assets/app.js"


def test_output_key_normalises_separators():
    assert output_key("demo123", "assets\\img\\logo.png") == "__outputs/demo123/assets/img/logo.png"


@pytest.mark.parametrize(
    "path, expected",
    [
        ("index.html", "text/html"),
        ("styles/site.css", "text/css"),
        ("img/logo.png", "image/png"),
        ("data.unknownext", "application/octet-stream"),
        ("LICENSE", "application/octet-stream"),
    ],
)
def test_guess_content_type(path, expected):
    assert guess_content_type(path) == expected


# ---------------------------------------------------------------------------
# Put
# ---------------------------------------------------------------------------


async def test_put_file_uploads_bytes_with_content_type(store, s3_client, tmp_path):
    source = tmp_path / "index.html"
    source.write_bytes(b"<h1>hi</h1>")

    await store.put_file("__outputs/demo123/index.html", source)

    s3_client.put_object.assert_called_once_with(
        Bucket="deployment-app-build",
        Key="__outputs/demo123/index.html",
        Body=b"<h1>hi</h1>",
        ContentType="text/html",
    )


async def test_client_error_is_wrapped(store, s3_client):
    s3_client.put_object.side_effect = ClientError(
        {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject"
    )
    with pytest.raises(ArtifactStoreError, match="AccessDenied"):
        await store.put("__outputs/demo123/index.html", b"x", "text/html")


# ---------------------------------------------------------------------------
# Listing, copy and delete
# ---------------------------------------------------------------------------


async def test_list_prefix_follows_continuation_tokens(store, s3_client):
    s3_client.list_objects_v2.side_effect = [
        _listing(["__outputs/a/1"], truncated=True, token="t1"),
        _listing(["__outputs/a/2"]),
    ]

    keys = await store.list_prefix("__outputs/a/")

    assert keys == ["__outputs/a/1", "__outputs/a/2"]
    second_call = s3_client.list_objects_v2.call_args_list[1]
    assert second_call.kwargs["ContinuationToken"] == "t1"


async def test_copy_prefix_copies_then_deletes_sources(store, s3_client):
    s3_client.list_objects_v2.return_value = _listing(["__outputs/old/index.html", "__outputs/old/js/app.js"])

    moved = await store.copy_prefix("__outputs/old/", "__outputs/new/")

    assert moved == 2
    targets = [c.kwargs["Key"] for c in s3_client.copy_object.call_args_list]
    assert targets == ["__outputs/new/index.html", "__outputs/new/js/app.js"]
    assert s3_client.copy_object.call_args_list[0].kwargs["CopySource"] == {
        "Bucket": "deployment-app-build",
        "Key": "__outputs/old/index.html",
    }
    s3_client.delete_objects.assert_called_once_with(
        Bucket="deployment-app-build",
        Delete={"Objects": [{"Key": "__outputs/old/index.html"}, {"Key": "__outputs/old/js/app.js"}]},
    )


async def test_copy_prefix_with_nothing_to_move(store, s3_client):
    s3_client.list_objects_v2.return_value = _listing([])

    assert await store.copy_prefix("__outputs/old/", "__outputs/new/") == 0
    s3_client.copy_object.assert_not_called()
    s3_client.delete_objects.assert_not_called()


async def test_delete_prefix_batches_by_thousand(store, s3_client):
    keys = [f"__outputs/big/{i}.html" for i in range(2500)]
    s3_client.list_objects_v2.return_value = _listing(keys)

    deleted = await store.delete_prefix("__outputs/big/")

    assert deleted == 2500
    batch_sizes = [len(c.kwargs["Delete"]["Objects"]) for c in s3_client.delete_objects.call_args_list]
    assert batch_sizes == [1000, 1000, 500]


async def test_close_releases_client(store, s3_client):
    await store.put("k", b"x")
    await store.close()
    s3_client.close.assert_called_once()
