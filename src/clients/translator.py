#!/usr/bin/env python3
"""
Translator Capability (AWS Translate)
-------------------------------------
- translate(text, source, target) -> str via boto3's `translate` client
- Blank input is never sent (the service rejects zero-length text)
- Retries service/network errors with exponential backoff
- translate_fields() fans a record's fields out in chunks of concurrent requests
  with a short pause between chunks to stay under the service rate limit
"""

import time
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

log = logging.getLogger(__name__)

MAX_RETRIES = 3
INITIAL_BACKOFF_SECS = 1.0
MAX_CONCURRENT_REQUESTS = 5
PAUSE_BETWEEN_CHUNKS_SECS = 0.2


class Translator:
    def __init__(
        self,
        region: Optional[str] = None,
        client=None,
        max_retries: int = MAX_RETRIES,
        initial_backoff_secs: float = INITIAL_BACKOFF_SECS,
        sleep=time.sleep,
    ):
        # Credentials come from the default AWS chain (env, profile, instance role)
        self.client = client or boto3.client("translate", region_name=region)
        self.max_retries = max_retries
        self.initial_backoff_secs = initial_backoff_secs
        self._sleep = sleep

    def translate(self, text: Optional[str], source: str, target: str) -> str:
        if not text or not text.strip():
            return ""

        attempt = 0
        backoff = self.initial_backoff_secs
        while True:
            try:
                resp = self.client.translate_text(
                    Text=text,
                    SourceLanguageCode=source,
                    TargetLanguageCode=target,
                )
                return resp["TranslatedText"]
            except (BotoCoreError, ClientError) as e:
                attempt += 1
                if attempt > self.max_retries:
                    raise
                log.warning(
                    f"Translate {source}->{target} failed (attempt {attempt}/{self.max_retries}): {e}. "
                    f"Retrying in {backoff:.1f}s..."
                )
                self._sleep(backoff)
                backoff *= 2


def translate_fields(
    translator,
    fields: Dict[str, Optional[str]],
    source: str,
    target: str,
    max_concurrent: int = MAX_CONCURRENT_REQUESTS,
    pause_secs: float = PAUSE_BETWEEN_CHUNKS_SECS,
    sleep=time.sleep,
) -> Dict[str, str]:
    """
    Translate every field of one record. Empty fields map to "" without a service call;
    a field whose call fails maps to "" as well (the caller decides what an empty title means).
    """
    out = {name: "" for name in fields}
    pending = [(name, value) for name, value in fields.items() if value and str(value).strip()]

    for start in range(0, len(pending), max_concurrent):
        if start > 0:
            sleep(pause_secs)
        chunk = pending[start:start + max_concurrent]
        with ThreadPoolExecutor(max_workers=len(chunk)) as pool:
            futures = {name: pool.submit(translator.translate, value, source, target) for name, value in chunk}
            for name, fut in futures.items():
                try:
                    out[name] = fut.result() or ""
                except (BotoCoreError, ClientError) as e:
                    log.warning(f"Field '{name}' could not be translated {source}->{target}: {e}")
                    out[name] = ""
    return out
