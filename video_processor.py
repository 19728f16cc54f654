import io
import os
import shutil
import subprocess
import tempfile
import uuid

import requests
from PIL import Image, ImageOps, UnidentifiedImageError

import config
from s3_storage import upload_file

WATERMARK_TEXT = 'PicPip'
DOWNLOAD_TIMEOUT = 60


def make_thumbnail(image_bytes, max_size=400):
    """
    Returns a JPEG thumbnail (longest side <= max_size) of an uploaded photo.
    EXIF orientation is applied so phone photos are not sideways.
    Raises ValueError if Pillow can't decode the image.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            img = ImageOps.exif_transpose(img)
            img.thumbnail((max_size, max_size))
            if img.mode not in ('RGB', 'L'):
                img = img.convert('RGB')
            out = io.BytesIO()
            img.save(out, format='JPEG', quality=85)
            return out.getvalue()
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f"Could not read image: {e}")


def watermark_video(video_url, animation_id):
    """
    Downloads a finished video, burns a text watermark into it with ffmpeg and
    stores the result. Returns the public URL, or None if any step failed
    (callers keep the unwatermarked URL in that case).
    """
    temp_dir = tempfile.mkdtemp(prefix='picpip_wm_')
    source_path = os.path.join(temp_dir, 'source.mp4')
    output_path = os.path.join(temp_dir, 'watermarked.mp4')

    try:
        print(f"-> Watermarking video for animation {animation_id}")
        with requests.get(video_url, stream=True, timeout=DOWNLOAD_TIMEOUT) as response:
            response.raise_for_status()
            with open(source_path, 'wb') as f:
                for chunk in response.iter_content(chunk_size=1024 * 256):
                    f.write(chunk)

        ffmpeg_cmd = [
            'ffmpeg', '-y',
            '-i', source_path,
            '-vf', (f"drawtext=text='{WATERMARK_TEXT}':fontcolor=white@0.6:fontsize=h/12:"
                    "x=w-tw-20:y=h-th-20:shadowcolor=black@0.4:shadowx=2:shadowy=2"),
            '-c:v', 'libx264',
            '-preset', 'veryfast',
            '-crf', '23',
            '-pix_fmt', 'yuv420p',
            '-c:a', 'copy',
            '-movflags', '+faststart',
            output_path
        ]
        subprocess.run(ffmpeg_cmd, check=True, capture_output=True, text=True, timeout=120)

        key = f"animations/watermarked/{animation_id}-{uuid.uuid4().hex[:8]}.mp4"
        url = upload_file(output_path, key)
        if url:
            print(f"   ...watermarked video stored at {url}")
        return url

    except subprocess.TimeoutExpired:
        print("   ...FFMPEG WATERMARK TIMED OUT after 2 minutes.")
        return None
    except subprocess.CalledProcessError as e:
        print("   ...FFMPEG WATERMARK FAILED.")
        print(f"   ...stderr: {e.stderr}")
        return None
    except (requests.RequestException, OSError) as e:
        print(f"   ...watermark error: {e}")
        return None
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)


def is_watermarking_enabled():
    return config.WATERMARK_VIDEOS and shutil.which('ffmpeg') is not None
