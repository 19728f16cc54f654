"""
Photo and video storage for PicPip.

Objects go to S3 when USE_S3 is on, otherwise under STATIC_FOLDER so the Flask
dev server can serve them from /static/.
"""

import io
import mimetypes
import os
import shutil

import boto3
from botocore.exceptions import ClientError

import config


class MediaStore:
    """S3 bucket or local static folder, chosen once at startup."""

    def __init__(self):
        self.use_s3 = config.USE_S3 and bool(config.S3_BUCKET_NAME)
        self.bucket = config.S3_BUCKET_NAME or None
        self.client = None

        if config.USE_S3 and not config.S3_BUCKET_NAME:
            print("⚠️ USE_S3 is on but S3_BUCKET_NAME is empty, falling back to local storage")
        if self.use_s3:
            # Credentials come from the standard AWS_* environment variables
            self.client = boto3.client('s3', region_name=config.AWS_REGION)
            print(f"☁️ Storing media in s3://{self.bucket}")
        else:
            print("📁 Storing media under the local static folder")

    def local_path(self, key):
        return os.path.join(config.STATIC_FOLDER, *key.split('/'))

    def public_url(self, key):
        if not self.use_s3:
            return f"/static/{key}"
        if config.CLOUDFRONT_URL:
            return f"{config.CLOUDFRONT_URL}/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"

    def put_bytes(self, data, key, content_type=None):
        """
        Store ``data`` under ``key`` and return its public URL.

        S3 errors propagate; the upload route turns them into a 500.
        """
        if not self.use_s3:
            path = self.local_path(key)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, 'wb') as f:
                f.write(data)
            return self.public_url(key)

        self.client.upload_fileobj(
            io.BytesIO(data), self.bucket, key,
            ExtraArgs={'ContentType': content_type or 'application/octet-stream', 'ACL': 'public-read'}
        )
        return self.public_url(key)

    def put_file(self, path, key):
        """Copy a finished file (e.g. a watermarked video) into storage. None on S3 failure."""
        if not self.use_s3:
            target = self.local_path(key)
            if os.path.abspath(target) != os.path.abspath(path):
                os.makedirs(os.path.dirname(target), exist_ok=True)
                shutil.copyfile(path, target)
            return self.public_url(key)

        content_type = mimetypes.guess_type(path)[0] or 'application/octet-stream'
        try:
            self.client.upload_file(path, self.bucket, key,
                                    ExtraArgs={'ContentType': content_type, 'ACL': 'public-read'})
        except ClientError as e:
            print(f"❌ S3 upload of {key} failed: {e}")
            return None
        return self.public_url(key)

    def key_for_url(self, url):
        """Inverse of public_url for URLs this store handed out; None for anything else."""
        for prefix in self._url_prefixes():
            if url and url.startswith(prefix):
                return url[len(prefix):]
        return None

    def _url_prefixes(self):
        prefixes = ['/static/']
        if self.use_s3:
            if config.CLOUDFRONT_URL:
                prefixes.append(f"{config.CLOUDFRONT_URL}/")
            prefixes.append(f"https://{self.bucket}.s3.amazonaws.com/")
        return prefixes

    def download_file(self, key, local_path):
        if not self.use_s3:
            source = self.local_path(key)
            if not os.path.exists(source):
                return False
            if os.path.abspath(source) != os.path.abspath(local_path):
                os.makedirs(os.path.dirname(local_path) or '.', exist_ok=True)
                shutil.copyfile(source, local_path)
            return True

        try:
            os.makedirs(os.path.dirname(local_path) or '.', exist_ok=True)
            self.client.download_file(self.bucket, key, local_path)
            return True
        except ClientError as e:
            print(f"❌ S3 download of {key} failed: {e}")
            return False

    def delete_file(self, key):
        if not self.use_s3:
            try:
                os.remove(self.local_path(key))
            except FileNotFoundError:
                pass
            except OSError as e:
                print(f"❌ Could not delete {key}: {e}")
                return False
            return True

        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            print(f"❌ S3 delete of {key} failed: {e}")
            return False

    def file_exists(self, key):
        if not self.use_s3:
            return os.path.exists(self.local_path(key))
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError:
            return False


store = MediaStore()


def save_bytes(data, key, content_type=None):
    return store.put_bytes(data, key, content_type)


def upload_file(local_path, key):
    return store.put_file(local_path, key)


def download_file(key, local_path):
    return store.download_file(key, local_path)


def delete_file(key):
    return store.delete_file(key)


def file_exists(key):
    return store.file_exists(key)


def get_public_url(key):
    return store.public_url(key)


def key_for_url(url):
    return store.key_for_url(url)


def absolute_url(url):
    """Runway needs absolute URLs; local storage hands out /static/... paths."""
    if not url:
        return ''
    if url.startswith(('http://', 'https://')):
        return url
    return f"{config.APP_URL}/{url.lstrip('/')}"
