# utils/model_helpers.py
import logging
import sys
from pathlib import Path
from typing import Union
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from tqdm import tqdm
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_BYTES = 1 << 20


def _build_session() -> requests.Session:
    s = requests.Session()
    adapter = HTTPAdapter(
        max_retries=Retry(
            total=3,
            backoff_factor=0.3,
            status_forcelist=(502, 503, 504),
            allowed_methods=frozenset(["GET", "HEAD"]),
        ),
    )
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    return s


def is_url(ref: str) -> bool:
    return urlparse(ref).scheme in ("http", "https")


def resolve_model(model: str, model_dir: Union[str, Path] = "models",
                  show_progress: bool = True) -> str:
    """
    Turn the `model` setting into something `ModelHandle.load` accepts.

    • URL          → downloaded once into `model_dir`, local path returned
    • local path   → returned as-is
    • anything else is passed through as a Hugging Face hub id
    """
    if is_url(model):
        filename = Path(urlparse(model).path).name or "model.gguf"
        destination = Path(model_dir) / filename
        ensure_model_exists(model, destination, show_progress=show_progress)
        return str(destination)

    if Path(model).exists():
        logger.info(f"Model found at: {model}")
    else:
        logger.info(f"'{model}' is not a local path; treating it as a hub id.")
    return model


def ensure_model_exists(url: str, destination: Union[str, Path],
                        show_progress: bool = True) -> Path:
    destination = Path(destination)
    if destination.exists():
        logger.info(f"Model found at: {destination}")
        return destination

    logger.info(f"Model not found at {destination}; downloading from {url}")
    destination.parent.mkdir(parents=True, exist_ok=True)
    download_model(url, destination, show_progress=show_progress)
    return destination


def download_model(url: str, destination: Path, show_progress: bool = True,
                   timeout: int = 60) -> None:
    """
    Stream `url` to `destination` with a progress bar.  Bytes go to a
    `.part` file first so an interrupted download is never mistaken for
    a complete model on the next run.
    """
    partial = destination.with_name(destination.name + ".part")
    session = _build_session()

    try:
        with session.get(url, stream=True, timeout=timeout) as resp:
            resp.raise_for_status()
            total = int(resp.headers.get("content-length", 0)) or None

            with partial.open("wb") as fh, tqdm(
                total=total,
                unit="B",
                unit_scale=True,
                unit_divisor=1024,
                desc=f"Downloading {destination.name}",
                disable=not show_progress,
                file=sys.stderr,
            ) as pbar:
                for chunk in resp.iter_content(chunk_size=DOWNLOAD_CHUNK_BYTES):
                    if not chunk:
                        continue
                    fh.write(chunk)
                    pbar.update(len(chunk))
    except requests.exceptions.RequestException as e:
        logger.error(f"Model download failed: {e}")
        partial.unlink(missing_ok=True)
        raise

    partial.replace(destination)
    logger.info(f"Downloaded {destination.name} ({destination.stat().st_size} bytes)")
