from __future__ import annotations
import os
import re
from dataclasses import dataclass
from typing import Sequence

import requests

from config.loader import ConfigStore
from logging_.engine_logger import get_engine_logger
from schemas.models import Category

log = get_engine_logger()

# редкие/нишевые домены, не проверяем ни в одном списке
EXCLUDED_DOMAINS = frozenset(d.lower() for d in (
    "1337x.to",
    "4pda.ws",
    "cms1.dzvr.ru",
    "rutor.info",
    "nnmclub.to",
    "kinogo.biz",
    "anidub.com",
    "lostfilm.tv",
    "baibako.tv",
    "toloka.to",
    "academy.creatio.com",
    "ads-twitter.com",
    "ua",
    "www.alza.hu",
    "alza.hu",
    "1018213540.rsc.cdn77.org",
))
EXCLUDED_SUFFIXES = (".ua",)

HARDCODED_FALLBACK = (
    "wikipedia.org", "google.com", "youtube.com", "github.com",
    "raw.githubusercontent.com", "cloudflare.com", "discord.com", "telegram.org",
    "twitter.com", "facebook.com", "instagram.com", "vk.com", "ya.ru",
    "yandex.ru", "mail.ru", "ok.ru", "tiktok.com", "twitch.tv", "reddit.com",
    "amazon.com", "microsoft.com", "apple.com", "netflix.com", "spotify.com",
    "zoom.us", "slack.com", "medium.com", "stackoverflow.com",
)

HARDCODED_ALLOWED = (
    "wikipedia.org", "google.com", "github.com", "cloudflare.com",
    "microsoft.com", "apple.com", "amazon.com", "stackoverflow.com",
    "reddit.com", "medium.com", "bbc.com", "reuters.com",
)


@dataclass(frozen=True)
class CategorySource:
    label: str
    short_label: str
    path: str | None  # относительно lists.base_url; None = локальный список


CATEGORY_SOURCES: dict[Category, CategorySource] = {
    Category.COMPANY_BLOCKED: CategorySource(
        "Services blocked by the company itself (sanctions, geo restrictions)",
        "Blocked by company", "Services/google_ai.lst"),
    Category.BLOCKED_BY_RUSSIA: CategorySource(
        "Blocked inside Russia (RKN and similar)",
        "Blocked in RU", "Russia/inside-raw.lst"),
    Category.RUSSIAN_SPECIFIC: CategorySource(
        "Reachable only from Russia (government services etc.)",
        "RU only", "Russia/outside-raw.lst"),
    Category.ALLOWED: CategorySource(
        "Usually reachable",
        "Reachable", None),
}


@dataclass(frozen=True)
class Preset:
    id: str
    label: str
    path: str
    category: Category | None = None


PRESETS: tuple[Preset, ...] = (
    Preset("russia-inside", "Russia inside RAW", "Russia/inside-raw.lst", Category.BLOCKED_BY_RUSSIA),
    Preset("russia-outside", "Russia outside RAW", "Russia/outside-raw.lst", Category.RUSSIAN_SPECIFIC),
    Preset("google-ai", "Services: Google AI (company-blocked)", "Services/google_ai.lst", Category.COMPANY_BLOCKED),
    Preset("youtube", "Services: YouTube", "Services/youtube.lst"),
    Preset("discord", "Services: Discord", "Services/discord.lst"),
    Preset("meta", "Services: Meta", "Services/meta.lst"),
    Preset("telegram", "Services: Telegram", "Services/telegram.lst"),
    Preset("tiktok", "Services: Tik-Tok", "Services/tiktok.lst"),
    Preset("twitter", "Services: Twitter", "Services/twitter.lst"),
    Preset("hdrezka", "Services: HDRezka", "Services/hdrezka.lst"),
)


def source_url(path: str) -> str:
    base = ConfigStore.get().lists.base_url.rstrip("/")
    return f"{base}/{path.lstrip('/')}"


def find_preset(preset_id: str | None) -> Preset | None:
    for p in PRESETS:
        if p.id == preset_id:
            return p
    return None


_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)


def extract_domain(raw: str) -> str:
    """'HTTPS://Sub.Example.com:443/path?q' -> 'sub.example.com'"""
    s = raw.strip().lower()
    s = _SCHEME_RE.sub("", s)
    for sep in ("/", "?", ":"):
        idx = s.find(sep)
        if idx >= 0:
            s = s[:idx]
    return s.lstrip(".")


def parse_domain_list(text: str) -> list[str]:
    seen = set()
    result = []
    for line in (text or "").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or line.startswith("//"):
            continue
        domain = extract_domain(line)
        if len(domain) < 2 or domain in seen:
            continue
        seen.add(domain)
        result.append(domain)
    return result


def is_excluded(domain: str) -> bool:
    d = domain.lower()
    return d in EXCLUDED_DOMAINS or d.endswith(EXCLUDED_SUFFIXES)


def filter_excluded(domains: Sequence[str]) -> list[str]:
    return [d for d in domains if not is_excluded(d)]


def fetch_domain_list(url: str) -> list[str]:
    """Downloads and parses a list. Raises requests exceptions on any failure."""
    cfg = ConfigStore.get()
    resp = requests.get(
        url,
        timeout=cfg.lists.fetch_timeout_sec,
        headers={"User-Agent": cfg.http_client.user_agent, "Cache-Control": "no-cache"},
    )
    resp.raise_for_status()
    domains = filter_excluded(parse_domain_list(resp.text))
    log.info(f"Fetched {len(domains)} domains from {url}")
    return domains


class ListStore:
    """Local fallback/allowed lists, read from data_dir/lists once and cached."""
    _fallback_cache: list[str] | None = None
    _allowed_cache: list[str] | None = None

    @classmethod
    def _read_local(cls, file_name: str) -> list[str]:
        path = os.path.join(ConfigStore.get().paths.data_dir, "lists", file_name)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return filter_excluded(parse_domain_list(f.read()))
        except FileNotFoundError:
            log.warning(f"Local list not found: {path}")
        except OSError as e:
            log.error(f"Failed to read local list {path}: {e}")
        return []

    @classmethod
    def fallback(cls) -> list[str]:
        if cls._fallback_cache is None:
            domains = cls._read_local("default_domains.txt")
            if not domains:
                domains = filter_excluded(parse_domain_list("\n".join(HARDCODED_FALLBACK)))
            cls._fallback_cache = domains
        return list(cls._fallback_cache)

    @classmethod
    def allowed(cls) -> list[str]:
        if cls._allowed_cache is None:
            domains = cls._read_local("allowed_domains.txt")
            if not domains:
                domains = filter_excluded(parse_domain_list("\n".join(HARDCODED_ALLOWED)))
            cls._allowed_cache = domains
        return list(cls._allowed_cache)

    @classmethod
    def clear(cls):
        cls._fallback_cache = None
        cls._allowed_cache = None


def load_domains_for_categories(
        categories: Sequence[Category], total_limit: int
) -> tuple[list[tuple[str, Category]], bool]:
    """
    Balanced list over the selected categories: each gets an equal share of
    `total_limit`. A category whose source is unreachable is filled from the
    fallback list. Returns ([(domain, category)], used_fallback).
    """
    if not categories or total_limit <= 0:
        return [], False

    per_category = max(1, total_limit // len(categories))
    seen = set()
    picked: list[tuple[str, Category]] = []
    used_fallback = False

    for cat in categories:
        if len(picked) >= total_limit:
            break
        take = min(per_category, total_limit - len(picked))
        src = CATEGORY_SOURCES[cat]
        if src.path is None:
            domains = ListStore.allowed()
        else:
            url = source_url(src.path)
            try:
                domains = fetch_domain_list(url)
            except requests.exceptions.RequestException as e:
                log.warning(f"List for {cat.value} unavailable ({url}): {e}. Using fallback list.")
                domains = ListStore.fallback()[:take]
                used_fallback = True

        added = 0
        for d in domains:
            if added >= take or len(picked) >= total_limit:
                break
            if d in seen:
                continue
            seen.add(d)
            picked.append((d, cat))
            added += 1

    return picked[:total_limit], used_fallback


def load_domains_from_preset_or_url(
        preset_url: str | None, custom_url: str | None
) -> tuple[list[str], bool]:
    """Custom URL wins over the preset. Failure or an empty list falls back."""
    url = (custom_url or "").strip() or preset_url
    if url:
        try:
            domains = fetch_domain_list(url)
            if domains:
                return domains, False
            log.warning(f"List at {url} is empty. Using fallback list.")
        except requests.exceptions.RequestException as e:
            log.warning(f"List {url} unavailable: {e}. Using fallback list.")
    return ListStore.fallback(), True
