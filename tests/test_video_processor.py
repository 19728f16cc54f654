import io
import subprocess

import pytest
import requests
from PIL import Image

import video_processor
from video_processor import make_thumbnail, watermark_video


class FakeDownload:
    def __init__(self, chunks=(b'mp4-bytes',), status_error=None):
        self.chunks = chunks
        self.status_error = status_error

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status_error:
            raise self.status_error

    def iter_content(self, chunk_size=None):
        return iter(self.chunks)


def fake_ffmpeg(cmd, **kwargs):
    with open(cmd[-1], 'wb') as f:
        f.write(b'watermarked')
    return subprocess.CompletedProcess(cmd, 0, '', '')


@pytest.fixture
def uploads(monkeypatch):
    stored = []

    def upload_file(path, key):
        with open(path, 'rb') as f:
            stored.append((key, f.read()))
        return f"/static/{key}"

    monkeypatch.setattr(video_processor, 'upload_file', upload_file)
    monkeypatch.setattr(video_processor.requests, 'get', lambda url, **kwargs: FakeDownload())
    monkeypatch.setattr(video_processor.subprocess, 'run', fake_ffmpeg)
    return stored


def test_watermark_video_stores_result(uploads):
    url = watermark_video('https://cdn.example.com/v.mp4', 'anim-1')
    assert url.startswith('/static/animations/watermarked/anim-1-')
    assert uploads[0][1] == b'watermarked'


def test_watermark_video_download_failure(uploads, monkeypatch):
    def refuse(url, **kwargs):
        raise requests.ConnectionError('cdn unreachable')

    monkeypatch.setattr(video_processor.requests, 'get', refuse)
    assert watermark_video('https://cdn.example.com/v.mp4', 'anim-1') is None
    assert uploads == []


def test_watermark_video_bad_status(uploads, monkeypatch):
    monkeypatch.setattr(video_processor.requests, 'get',
                        lambda url, **kwargs: FakeDownload(status_error=requests.HTTPError('403')))
    assert watermark_video('https://cdn.example.com/v.mp4', 'anim-1') is None


@pytest.mark.parametrize('error', [
    subprocess.CalledProcessError(1, 'ffmpeg', stderr='Invalid data found'),
    subprocess.TimeoutExpired('ffmpeg', 120),
])
def test_watermark_video_ffmpeg_failure(uploads, monkeypatch, error):
    def ffmpeg(cmd, **kwargs):
        raise error

    monkeypatch.setattr(video_processor.subprocess, 'run', ffmpeg)
    assert watermark_video('https://cdn.example.com/v.mp4', 'anim-1') is None
    assert uploads == []


def test_watermark_video_upload_failure(uploads, monkeypatch):
    monkeypatch.setattr(video_processor, 'upload_file', lambda path, key: None)
    assert watermark_video('https://cdn.example.com/v.mp4', 'anim-1') is None


def test_watermarking_needs_ffmpeg(monkeypatch):
    monkeypatch.setattr(video_processor.config, 'WATERMARK_VIDEOS', True)
    monkeypatch.setattr(video_processor.shutil, 'which', lambda name: None)
    assert not video_processor.is_watermarking_enabled()
    monkeypatch.setattr(video_processor.shutil, 'which', lambda name: '/usr/bin/ffmpeg')
    assert video_processor.is_watermarking_enabled()


def test_make_thumbnail_shrinks_and_converts():
    buf = io.BytesIO()
    Image.new('RGBA', (1200, 600), (10, 20, 30, 128)).save(buf, format='PNG')
    with Image.open(io.BytesIO(make_thumbnail(buf.getvalue()))) as thumb:
        assert thumb.format == 'JPEG'
        assert thumb.size == (400, 200)


def test_make_thumbnail_rejects_undecodable_bytes():
    with pytest.raises(ValueError):
        make_thumbnail(b'not an image')
