import os

import pytest
from botocore.exceptions import ClientError

import config
import s3_storage
from s3_storage import MediaStore


class FakeS3:
    def __init__(self):
        self.objects = {}

    def upload_fileobj(self, fileobj, bucket, key, ExtraArgs=None):
        self.objects[key] = fileobj.read()

    def upload_file(self, path, bucket, key, ExtraArgs=None):
        with open(path, 'rb') as f:
            self.objects[key] = f.read()

    def download_file(self, bucket, key, path):
        if key not in self.objects:
            raise ClientError({'Error': {'Code': '404', 'Message': 'Not Found'}}, 'GetObject')
        with open(path, 'wb') as f:
            f.write(self.objects[key])

    def delete_object(self, Bucket, Key):
        self.objects.pop(Key, None)

    def head_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError({'Error': {'Code': '404', 'Message': 'Not Found'}}, 'HeadObject')
        return {}


@pytest.fixture
def s3(monkeypatch):
    fake = FakeS3()
    monkeypatch.setattr(config, 'USE_S3', True)
    monkeypatch.setattr(config, 'S3_BUCKET_NAME', 'picpip-media')
    monkeypatch.setattr(config, 'CLOUDFRONT_URL', '')
    monkeypatch.setattr(s3_storage.boto3, 'client', lambda service, region_name=None: fake)
    return fake


def test_local_store_round_trip(tmp_path):
    url = s3_storage.save_bytes(b'photo', 'guest-uploads/g1/a1.png', 'image/png')
    assert url == '/static/guest-uploads/g1/a1.png'
    assert s3_storage.get_public_url('guest-uploads/g1/a1.png') == url
    assert s3_storage.key_for_url(url) == 'guest-uploads/g1/a1.png'
    assert s3_storage.file_exists('guest-uploads/g1/a1.png')

    copy_path = str(tmp_path / 'copy' / 'a1.png')
    assert s3_storage.download_file('guest-uploads/g1/a1.png', copy_path)
    with open(copy_path, 'rb') as f:
        assert f.read() == b'photo'

    assert s3_storage.delete_file('guest-uploads/g1/a1.png')
    assert not s3_storage.file_exists('guest-uploads/g1/a1.png')
    # Deleting twice is fine
    assert s3_storage.delete_file('guest-uploads/g1/a1.png')
    assert not s3_storage.download_file('guest-uploads/g1/a1.png', copy_path)


def test_key_for_url_ignores_foreign_urls():
    assert s3_storage.key_for_url('https://cdn.example.com/v.mp4') is None
    assert s3_storage.key_for_url(None) is None


def test_public_url_rules(s3, monkeypatch):
    store = MediaStore()
    assert store.public_url('a/b.png') == 'https://picpip-media.s3.amazonaws.com/a/b.png'

    monkeypatch.setattr(config, 'CLOUDFRONT_URL', 'https://media.picpip.co')
    assert store.public_url('a/b.png') == 'https://media.picpip.co/a/b.png'
    assert store.key_for_url('https://media.picpip.co/a/b.png') == 'a/b.png'

    monkeypatch.setattr(config, 'USE_S3', False)
    assert MediaStore().public_url('a/b.png') == '/static/a/b.png'


def test_s3_without_bucket_falls_back_to_local(s3, monkeypatch):
    monkeypatch.setattr(config, 'S3_BUCKET_NAME', '')
    store = MediaStore()
    assert store.use_s3 is False
    assert store.public_url('a/b.png') == '/static/a/b.png'


def test_s3_operations(s3, tmp_path):
    store = MediaStore()
    url = store.put_bytes(b'video', 'animations/a1.mp4', 'video/mp4')
    assert url == 'https://picpip-media.s3.amazonaws.com/animations/a1.mp4'
    assert s3.objects['animations/a1.mp4'] == b'video'
    assert store.file_exists('animations/a1.mp4')

    target = str(tmp_path / 'a1.mp4')
    assert store.download_file('animations/a1.mp4', target)
    assert os.path.getsize(target) == 5

    assert store.delete_file('animations/a1.mp4')
    assert not store.file_exists('animations/a1.mp4')
    assert store.download_file('animations/a1.mp4', target) is False


def test_absolute_url():
    assert s3_storage.absolute_url('/static/a.png') == 'http://localhost:3000/static/a.png'
    assert s3_storage.absolute_url('https://cdn.example.com/a.png') == 'https://cdn.example.com/a.png'
    assert s3_storage.absolute_url('') == ''
