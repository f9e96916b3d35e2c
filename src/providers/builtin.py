"""
Built-in provider capability bundles.

Each normalizer takes the JSON body of the attested API response and returns
a fixed-shape AttributeSet: counts are non-negative integers, levels and
buckets are clamped to their declared ranges, flags are booleans. Anything the
response does not carry normalizes to its zero value so the same logical fact
always commits identically.
"""

import math
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from models import SnapshotType
from providers.base import PageHandle, ProviderCapability, ProviderRegistry

UAEPASS_ACCOUNT_LEVELS = ("basic", "verified", "advanced")


# =============================================================================
# Normalization helpers
# =============================================================================

def _int(value: Any) -> int:
    """Coerce a raw count to int. Unparseable strings count as 0; non-finite numbers raise ValueError."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            value = float(value.replace(",", "").strip())
        except ValueError:
            return 0
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"non-finite count: {value}")
        return int(value)
    return 0


def clamp(value: Any, low: int = 0, high: int | None = None) -> int:
    result = max(low, _int(value))
    if high is not None:
        result = min(high, result)
    return result


def dig(data: Mapping[str, Any], *path: str, default: Any = None) -> Any:
    """Follow a key path through nested mappings."""
    current: Any = data
    for key in path:
        if not isinstance(current, Mapping) or key not in current:
            return default
        current = current[key]
    return current


def first_of(data: Mapping[str, Any], *paths: tuple[str, ...], default: Any = None) -> Any:
    for path in paths:
        value = dig(data, *path)
        if value is not None:
            return value
    return default


def account_age_days(created_at: Any, now: datetime | None = None) -> int:
    """Days since an ISO-8601 timestamp or epoch seconds. Unparseable input is 0."""
    if created_at in (None, ""):
        return 0
    now = now or datetime.now(UTC)
    try:
        if isinstance(created_at, (int, float)):
            created = datetime.fromtimestamp(created_at, UTC)
        else:
            created = datetime.fromisoformat(str(created_at).replace("Z", "+00:00"))
            if created.tzinfo is None:
                created = created.replace(tzinfo=UTC)
    except (ValueError, OverflowError, OSError):
        return 0
    return max(0, (now - created).days)


def bucket(value: int, thresholds: tuple[int, ...]) -> int:
    """Index of the highest threshold reached, 0 when below all of them."""
    result = 0
    for index, threshold in enumerate(thresholds, start=1):
        if value >= threshold:
            result = index
    return result


def _bearer_from_cookie(*names: str):
    def build(page: PageHandle) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        for name in names:
            token = page.cookies.get(name)
            if token:
                headers["Authorization"] = f"Bearer {token}"
                break
        return headers
    return build


# =============================================================================
# Social
# =============================================================================

def normalize_twitter(raw: Mapping[str, Any]) -> dict[str, Any]:
    user = raw.get("data", raw)
    return {
        "followers": clamp(first_of(user, ("public_metrics", "followers_count"), ("followers_count",))),
        "has_blue_check": bool(user.get("verified", False)),
        "follows_anylayer": bool(user.get("follows_anylayer", False)),
        "account_age_days": account_age_days(user.get("created_at")),
    }


def summarize_followers(attrs: Mapping[str, Any]) -> dict[str, Any]:
    return {"followers_bucket": bucket(attrs.get("followers", 0), (100, 1_000, 10_000, 100_000))}


def normalize_telegram(raw: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "account_age_days": clamp(raw.get("account_age_days")),
        "group_memberships": clamp(raw.get("group_memberships")),
        "channel_subscriptions": clamp(raw.get("channel_subscriptions")),
    }


# =============================================================================
# KYC
# =============================================================================

def normalize_exchange(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Shared by centralized exchanges: KYC tier 0..3 plus account facts."""
    level = first_of(raw, ("kyc_level",), ("verification_level",), ("tier",), ("data", "kycLevel"))
    return {
        "kyc_level": clamp(level, 0, 3),
        "country_code": clamp(raw.get("country_code")),
        "is_corporate": raw.get("account_type") == "corporate",
        "account_age_days": account_age_days(raw.get("created_at")),
    }


def normalize_uaepass(raw: Mapping[str, Any]) -> dict[str, Any]:
    level = str(raw.get("account_level") or raw.get("accountLevel") or "basic").lower()
    return {
        "verified": bool(raw.get("verified", False)),
        "account_level": level if level in UAEPASS_ACCOUNT_LEVELS else "basic",
        "account_age_days": account_age_days(raw.get("created_at")),
    }


# =============================================================================
# Employment / freelance
# =============================================================================

def normalize_linkedin(raw: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "connections": clamp(first_of(raw, ("num_connections",), ("connections",))),
        "has_verified_email": bool(raw.get("email_verified", False)),
        "account_age_days": account_age_days(raw.get("created_at")),
    }


def normalize_upwork(raw: Mapping[str, Any]) -> dict[str, Any]:
    profile = raw.get("profile", raw)
    rating = profile.get("rating", 0)
    try:
        rating_times_10 = int(float(rating) * 10)
    except (TypeError, ValueError):
        rating_times_10 = 0
    earnings = clamp(profile.get("total_earnings"))
    return {
        "completed_jobs": clamp(profile.get("completed_jobs")),
        "rating_times_10": clamp(rating_times_10, 0, 50),
        "earnings_bucket": bucket(earnings, (10_000, 100_000)),
    }


# =============================================================================
# Developer / education
# =============================================================================

def normalize_github(raw: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "public_repos": clamp(raw.get("public_repos")),
        "followers": clamp(raw.get("followers")),
        "following": clamp(raw.get("following")),
        "contributions": clamp(raw.get("contributions")),
        "org_memberships": clamp(raw.get("org_memberships")),
        "account_age_days": account_age_days(raw.get("created_at")),
    }


def normalize_course_platform(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Coursera, Udemy and edX expose the same three learner counters."""
    return {
        "courses_completed": clamp(first_of(raw, ("courses_completed",), ("coursesCompleted",))),
        "certificates_earned": clamp(first_of(raw, ("certificates_earned",), ("certificatesEarned",))),
        "courses_enrolled": clamp(first_of(raw, ("courses_enrolled",), ("coursesEnrolled",))),
        "account_age_days": account_age_days(first_of(raw, ("date_joined",), ("created",), ("created_at",))),
    }


# =============================================================================
# Creators
# =============================================================================

def _views_bucket(views: int) -> int:
    return bucket(views, (100_000, 1_000_000))


def normalize_youtube(raw: Mapping[str, Any]) -> dict[str, Any]:
    items = raw.get("items") or [{}]
    stats = items[0].get("statistics", {}) if isinstance(items[0], Mapping) else {}
    return {
        "subs_or_followers": clamp(stats.get("subscriberCount")),
        "total_views_bucket": _views_bucket(clamp(stats.get("viewCount"))),
        "partner_status": bool(raw.get("partner_status", False)),
        "account_age_days": account_age_days(dig(items[0], "snippet", "publishedAt")
                                             if isinstance(items[0], Mapping) else None),
    }


def normalize_tiktok(raw: Mapping[str, Any]) -> dict[str, Any]:
    user = dig(raw, "data", "user", default=raw)
    return {
        "subs_or_followers": clamp(first_of(user, ("follower_count",), ("followerCount",))),
        "total_views_bucket": _views_bucket(clamp(first_of(user, ("likes_count",), ("heartCount",)))),
        "partner_status": bool(user.get("verified", False)),
        "account_age_days": account_age_days(user.get("create_time")),
    }


def normalize_twitch(raw: Mapping[str, Any]) -> dict[str, Any]:
    users = raw.get("data") or [{}]
    user = users[0] if isinstance(users[0], Mapping) else {}
    return {
        "subs_or_followers": clamp(user.get("follower_count")),
        "total_views_bucket": _views_bucket(clamp(user.get("view_count"))),
        "partner_status": user.get("broadcaster_type") == "partner",
    }


# =============================================================================
# Login checks
# =============================================================================

def _twitter_logged_in(page: PageHandle) -> bool:
    return page.has_cookie("auth_token") or page.has_marker("account-switcher", "account-menu")


def _binance_logged_in(page: PageHandle) -> bool:
    return page.has_cookie("auth_token", "token") or page.has_marker("user-menu")


def _okx_logged_in(page: PageHandle) -> bool:
    return page.has_cookie("token")


def _linkedin_logged_in(page: PageHandle) -> bool:
    return page.has_cookie("li_at", "JSESSIONID") or page.has_marker("global-nav-me")


def _github_logged_in(page: PageHandle) -> bool:
    return (
        page.has_cookie("user_session", "logged_in", "_gh_sess")
        or page.has_marker("nav-avatar", "user-login")
        or bool(page.meta.get("user-login"))
    )


def _youtube_logged_in(page: PageHandle) -> bool:
    return page.has_cookie("LOGIN_INFO")


def _tiktok_logged_in(page: PageHandle) -> bool:
    return page.has_cookie("tt_chain_token")


def _twitch_logged_in(page: PageHandle) -> bool:
    return page.has_cookie("auth-token")


def _upwork_logged_in(page: PageHandle) -> bool:
    return page.has_cookie("oauth_token")


def _telegram_logged_in(page: PageHandle) -> bool:
    return page.has_marker("chat-list", "user-avatar") or page.has_cookie("stel_ssid")


def _coursera_logged_in(page: PageHandle) -> bool:
    return page.has_cookie("CAUTH") or page.has_cookie_prefix("session")


def _udemy_logged_in(page: PageHandle) -> bool:
    return page.has_cookie("access_token", "ud_user_jwt", "client_id")


def _edx_logged_in(page: PageHandle) -> bool:
    return page.has_cookie("edxloggedin", "sessionid")


def _uaepass_logged_in(page: PageHandle) -> bool:
    return page.has_cookie("sessionid") or page.has_cookie_prefix("uaepass_")


# =============================================================================
# Bundles
# =============================================================================

def _days(n: int) -> timedelta:
    return timedelta(days=n)


BUILTIN_PROVIDERS: tuple[ProviderCapability, ...] = (
    ProviderCapability(
        provider_id="twitter",
        host_patterns=("twitter.com", "*.twitter.com", "x.com", "*.x.com"),
        api_domain="api.twitter.com",
        endpoint="/2/users/me?user.fields=public_metrics,verified,created_at",
        login_check=_twitter_logged_in,
        attribute_normalizer=normalize_twitter,
        snapshot_type=SnapshotType.SOCIAL,
        default_validity=_days(30),
        auth_header_builder=_bearer_from_cookie("auth_token"),
        summary_builder=summarize_followers,
    ),
    ProviderCapability(
        provider_id="binance",
        host_patterns=("binance.com", "*.binance.com"),
        api_domain="www.binance.com",
        endpoint="/api/v3/account",
        login_check=_binance_logged_in,
        attribute_normalizer=normalize_exchange,
        snapshot_type=SnapshotType.KYC,
        default_validity=_days(180),
    ),
    ProviderCapability(
        provider_id="okx",
        host_patterns=("okx.com", "*.okx.com"),
        api_domain="www.okx.com",
        endpoint="/api/v5/users/profile",
        login_check=_okx_logged_in,
        attribute_normalizer=normalize_exchange,
        snapshot_type=SnapshotType.KYC,
        default_validity=_days(180),
    ),
    ProviderCapability(
        provider_id="linkedin",
        host_patterns=("linkedin.com", "*.linkedin.com"),
        api_domain="www.linkedin.com",
        endpoint="/v2/me",
        login_check=_linkedin_logged_in,
        attribute_normalizer=normalize_linkedin,
        snapshot_type=SnapshotType.EMPLOYMENT,
        default_validity=_days(365),
    ),
    ProviderCapability(
        provider_id="github",
        host_patterns=("github.com", "*.github.com"),
        api_domain="api.github.com",
        endpoint="/user",
        login_check=_github_logged_in,
        attribute_normalizer=normalize_github,
        snapshot_type=SnapshotType.EDUCATION,
        default_validity=_days(365),
        summary_builder=summarize_followers,
    ),
    ProviderCapability(
        provider_id="youtube",
        host_patterns=("youtube.com", "*.youtube.com"),
        api_domain="www.youtube.com",
        endpoint="/youtube/v3/channels?part=statistics,snippet&mine=true",
        login_check=_youtube_logged_in,
        attribute_normalizer=normalize_youtube,
        snapshot_type=SnapshotType.VIDEO,
        default_validity=_days(90),
    ),
    ProviderCapability(
        provider_id="tiktok",
        host_patterns=("tiktok.com", "*.tiktok.com"),
        api_domain="www.tiktok.com",
        endpoint="/api/user/info",
        login_check=_tiktok_logged_in,
        attribute_normalizer=normalize_tiktok,
        snapshot_type=SnapshotType.VIDEO,
        default_validity=_days(90),
    ),
    ProviderCapability(
        provider_id="twitch",
        host_patterns=("twitch.tv", "*.twitch.tv"),
        api_domain="api.twitch.tv",
        endpoint="/helix/users",
        login_check=_twitch_logged_in,
        attribute_normalizer=normalize_twitch,
        snapshot_type=SnapshotType.STREAMING,
        default_validity=_days(90),
        auth_header_builder=_bearer_from_cookie("auth-token"),
    ),
    ProviderCapability(
        provider_id="upwork",
        host_patterns=("upwork.com", "*.upwork.com"),
        api_domain="www.upwork.com",
        endpoint="/api/profiles/v1/providers/me",
        login_check=_upwork_logged_in,
        attribute_normalizer=normalize_upwork,
        snapshot_type=SnapshotType.FREELANCE,
        default_validity=_days(180),
        auth_header_builder=_bearer_from_cookie("oauth_token"),
    ),
    ProviderCapability(
        provider_id="telegram",
        host_patterns=("web.telegram.org", "*.web.telegram.org", "telegram.org", "*.telegram.org"),
        api_domain="web.telegram.org",
        endpoint="/",
        login_check=_telegram_logged_in,
        attribute_normalizer=normalize_telegram,
        snapshot_type=SnapshotType.SOCIAL,
        default_validity=_days(180),
    ),
    ProviderCapability(
        provider_id="coursera",
        host_patterns=("coursera.org", "*.coursera.org"),
        api_domain="www.coursera.org",
        endpoint="/api/user/profile",
        login_check=_coursera_logged_in,
        attribute_normalizer=normalize_course_platform,
        snapshot_type=SnapshotType.EDUCATION,
        default_validity=_days(365),
    ),
    ProviderCapability(
        provider_id="udemy",
        host_patterns=("udemy.com", "*.udemy.com"),
        api_domain="www.udemy.com",
        endpoint="/api-2.0/users/me",
        login_check=_udemy_logged_in,
        attribute_normalizer=normalize_course_platform,
        snapshot_type=SnapshotType.EDUCATION,
        default_validity=_days(365),
        auth_header_builder=_bearer_from_cookie("access_token", "ud_user_jwt"),
    ),
    ProviderCapability(
        provider_id="edx",
        host_patterns=("edx.org", "*.edx.org"),
        api_domain="courses.edx.org",
        endpoint="/api/user/v1/me",
        login_check=_edx_logged_in,
        attribute_normalizer=normalize_course_platform,
        snapshot_type=SnapshotType.EDUCATION,
        default_validity=_days(365),
    ),
    ProviderCapability(
        provider_id="uaepass",
        host_patterns=("uaepass.ae", "*.uaepass.ae"),
        api_domain="id.uaepass.ae",
        endpoint="/api/v1/user/profile",
        login_check=_uaepass_logged_in,
        attribute_normalizer=normalize_uaepass,
        snapshot_type=SnapshotType.KYC,
        default_validity=_days(365),
    ),
)


def default_registry(freeze: bool = True) -> ProviderRegistry:
    """Registry with every built-in bundle, frozen unless the caller adds more."""
    registry = ProviderRegistry(BUILTIN_PROVIDERS)
    if freeze:
        registry.freeze()
    return registry
