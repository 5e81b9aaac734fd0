"""
SafeURL Checker — Passive Website Safety Scoring

Inspects a site's TLS certificate, HTTP security headers, cookie flags
and domain WHOIS record, scores each category out of 25 and combines
them into a 0-100 safety score with a Safe / Warning / Dangerous rating.

Endpoints:
  POST /check       → Run the four checks, returns JSON
  POST /api/check   → Same as /check
  GET  /health      → Health probe
"""

# ── Standard library ──────────────────────────────────────────────────────────
import os
import re
import ssl
import math
import socket
import logging
import urllib.parse
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FutureTimeoutError

# ── Third-party ───────────────────────────────────────────────────────────────
import requests
import tldextract
import whois
from dateutil import parser as date_parser
from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.backends import default_backend
from flask import Flask, request, jsonify
from flask_cors import CORS

# ── SafeURL metadata ──────────────────────────────────────────────────────────
SAFEURL_NAME    = "SafeURLChecker"
SAFEURL_VERSION = "1.0"
SAFEURL_TAGLINE = "Passive Website Safety Score"

# ── Logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format=f"%(asctime)s [{SAFEURL_NAME}] [%(levelname)s] %(message)s"
)
log = logging.getLogger(SAFEURL_NAME)


# ── Configuration ─────────────────────────────────────────────────────────────

def _env_int(name, default):
    try:
        value = int(os.environ.get(name, "").strip())
    except ValueError:
        return default
    return value if value > 0 else default


HOST             = os.environ.get("HOST", "0.0.0.0")
PORT             = _env_int("PORT", 5050)
FETCH_TIMEOUT_MS = _env_int("FETCH_TIMEOUT", 8000)
FETCH_TIMEOUT    = FETCH_TIMEOUT_MS / 1000
TLS_TIMEOUT      = 5.0
WHOIS_TIMEOUT    = 10.0
MAX_REDIRECTS    = 5
USER_AGENT       = f"{SAFEURL_NAME}/{SAFEURL_VERSION} (passive safety check)"
ACCEPT_HEADER    = "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8"

# ── Scoring constants ─────────────────────────────────────────────────────────
MAX_SCORE         = 25
PASSING_THRESHOLD = 18
OVERALL_MAX       = 100
DANGEROUS_BELOW   = 50
WARNING_BELOW     = 60
COOKIE_ISSUE_PENALTY = 5
DAY_SECONDS       = 60 * 60 * 24

CATEGORY_LABELS = {
    "tls":     "HTTPS & TLS",
    "headers": "Security Headers",
    "cookies": "Cookie Security",
    "whois":   "Domain WHOIS",
}
CATEGORY_ORDER = ["tls", "headers", "cookies", "whois"]

# ── Flask app ─────────────────────────────────────────────────────────────────
app = Flask(__name__)
app.json.sort_keys = False
CORS(app)


# ══════════════════════════════════════════════════════════════════════════════
#  DATA CLASSES
# ══════════════════════════════════════════════════════════════════════════════

def _camel(name):
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _to_json(value):
    if isinstance(value, Details):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [_to_json(v) for v in value]
    if isinstance(value, dict):
        return {k: _to_json(v) for k, v in value.items()}
    return value


class Details:
    """Base for the per-category detail records; unset fields are omitted."""
    category = None

    def to_dict(self):
        return {
            _camel(f.name): _to_json(getattr(self, f.name))
            for f in fields(self)
            if getattr(self, f.name) is not None
        }


@dataclass
class TlsDetails(Details):
    category = "tls"
    host:              str = None
    port:              int = None
    protocol:          str = None
    cipher:            str = None
    issuer:            str = None
    subject:           str = None
    serial_number:     str = None
    valid_from:        str = None
    valid_to:          str = None
    days_until_expiry: int = None
    subject_alt_names: list = None
    error:             str = None


@dataclass
class HeaderDetails(Details):
    category = "headers"
    status_code:     int = None
    final_url:       str = None
    present_headers: dict = None
    missing:         list = None
    error:           str = None


@dataclass
class CookieInfo(Details):
    name:      str = ""
    domain:    str = None
    path:      str = None
    expires:   str = None
    secure:    bool = False
    http_only: bool = False
    same_site: str = None
    issues:    list = field(default_factory=list)


@dataclass
class CookieDetails(Details):
    category = "cookies"
    total_cookies:    int = None
    insecure_cookies: int = None
    cookies:          list = None
    note:             str = None
    error:            str = None


@dataclass
class WhoisDetails(Details):
    category = "whois"
    hostname:          str = None
    domain:            str = None
    registrar:         str = None
    name_servers:      list = None
    creation_date:     str = None
    domain_age_days:   int = None
    expiry_date:       str = None
    days_until_expiry: int = None
    error:             str = None


@dataclass
class FailureDetails(Details):
    error: str = None


class Penalty:
    """One rubric contribution: points subtracted, or a ceiling on the score."""
    def __init__(self, warning, points=0, cap=None):
        self.warning = warning
        self.points  = points
        self.cap     = cap

    def __repr__(self):
        return f"Penalty({self.warning!r}, points={self.points}, cap={self.cap})"


def fold_penalties(penalties, max_score=MAX_SCORE):
    """Sum the point deductions, apply every cap, clamp to [0, max_score]."""
    score = max_score - sum(p.points for p in penalties)
    caps  = [p.cap for p in penalties if p.cap is not None]
    if caps:
        score = min([score] + caps)
    return max(0, min(max_score, _round_half_up(score)))


class CategoryResult:
    """Score for one category (tls / headers / cookies / whois)."""
    def __init__(self, key, score, warnings=None, details=None,
                 max_score=MAX_SCORE, passing_threshold=PASSING_THRESHOLD, label=None):
        self.key       = key
        self.label     = label or CATEGORY_LABELS.get(key, "Unknown Check")
        self.max_score = max_score
        self.score     = max(0, min(max_score, _round_half_up(score)))
        self.passed    = self.score >= passing_threshold
        self.warnings  = [w for w in (warnings or []) if w]
        self.details   = details

    @classmethod
    def from_penalties(cls, key, penalties, details=None):
        return cls(key, fold_penalties(penalties),
                   warnings=[p.warning for p in penalties], details=details)

    def to_dict(self):
        return {
            "key":      self.key,
            "label":    self.label,
            "score":    self.score,
            "maxScore": self.max_score,
            "passed":   self.passed,
            "warnings": list(self.warnings),
            "details":  self.details.to_dict() if self.details is not None else {},
        }


class OverallScore:
    def __init__(self, total, rating, max_score=OVERALL_MAX):
        self.total  = total
        self.max    = max_score
        self.rating = rating

    def to_dict(self):
        return {"total": self.total, "max": self.max, "rating": self.rating}


class FetchContext:
    """Result of the shared GET: a response, an error, or both."""
    def __init__(self, response=None, error=None):
        self.response = response
        self.error    = error

    @property
    def error_message(self):
        return str(self.error) if self.error is not None else None

    def final_url(self, fallback):
        return final_url_of(self.response, fallback)


# ══════════════════════════════════════════════════════════════════════════════
#  UTILITIES
# ══════════════════════════════════════════════════════════════════════════════

def _round_half_up(value):
    return int(math.floor(value + 0.5))


def _utcnow():
    return datetime.now(timezone.utc)


def _as_utc(value):
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso_timestamp(value=None):
    value = _as_utc(value or _utcnow())
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def days_between(later, earlier):
    return math.floor((_as_utc(later) - _as_utc(earlier)).total_seconds() / DAY_SECONDS)


FORBIDDEN_HOST_CHARS = re.compile(r"[\x00-\x20\x7f<>\\^|%\"\[\]{}`]")


def normalize_url(raw):
    """Returns (normalized_url, None) or (None, error_message)."""
    if raw is None or raw == "":
        return None, "Please provide a url in the request body."
    if not isinstance(raw, str):
        return None, "The provided URL is not valid."
    try:
        parsed = urllib.parse.urlsplit(raw.strip())
        host   = parsed.hostname
        port   = parsed.port
    except ValueError:
        return None, "The provided URL is not valid."
    scheme = parsed.scheme.lower()
    if not scheme:
        return None, "The provided URL is not valid."
    if scheme not in ("http", "https"):
        return None, "Only HTTP and HTTPS URLs can be checked by this service."
    if not host or FORBIDDEN_HOST_CHARS.search(host):
        return None, "The provided URL is not valid."

    netloc = f"[{host}]" if ":" in host else host
    if port and port != {"http": 80, "https": 443}[scheme]:
        netloc = f"{netloc}:{port}"
    userinfo = parsed.netloc.rpartition("@")[0]
    if userinfo:
        netloc = f"{userinfo}@{netloc}"
    url = urllib.parse.urlunsplit(
        (scheme, netloc, parsed.path or "/", parsed.query, parsed.fragment)
    )
    return url, None


def make_session():
    s = requests.Session()
    s.headers.update({
        "User-Agent": USER_AGENT,
        "Accept":     ACCEPT_HEADER,
    })
    s.max_redirects = MAX_REDIRECTS
    return s


def final_url_of(response, fallback):
    if response is not None and getattr(response, "url", None):
        return response.url
    return fallback


# ══════════════════════════════════════════════════════════════════════════════
#  FETCHER
# ══════════════════════════════════════════════════════════════════════════════

def fetch_site_response(url, timeout=None):
    """
    One GET against the target. Every HTTP status counts as a response;
    transport faults land in ``error``. A response carried by the fault
    (redirect loop, or the unverified retry after a TLS trust failure)
    is kept alongside the error.
    """
    timeout = FETCH_TIMEOUT if timeout is None else timeout
    session = make_session()
    try:
        return FetchContext(session.get(url, timeout=timeout, allow_redirects=True))
    except requests.exceptions.SSLError as e:
        log.warning(f"TLS trust failure fetching {url}: {e}; retrying unverified")
        try:
            retry = session.get(url, timeout=timeout, verify=False, allow_redirects=True)
            return FetchContext(retry, e)
        except requests.exceptions.RequestException as retry_error:
            return FetchContext(retry_error.response, e)
    except requests.exceptions.RequestException as e:
        log.warning(f"Fetch failed for {url}: {e}")
        return FetchContext(e.response, e)
    except Exception as e:
        log.warning(f"Fetch failed for {url}: {e}")
        return FetchContext(None, e)
    finally:
        session.close()


def _resolve_response(url, context):
    if context is not None and context.response is not None:
        return context.response, context.error
    captured = context.error if context is not None else None
    own = fetch_site_response(url)
    return own.response, own.error or captured


# ══════════════════════════════════════════════════════════════════════════════
#  TLS EVALUATOR
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class CertificateInfo:
    issuer:            str = None
    subject:           str = None
    serial_number:     str = None
    not_before:        datetime = None
    not_after:         datetime = None
    not_after_invalid: bool = False
    dns_names:         list = None


def _format_name(name):
    preferred = [NameOID.COMMON_NAME, NameOID.ORGANIZATION_NAME,
                 NameOID.ORGANIZATIONAL_UNIT_NAME]
    parts = []
    for oid in preferred:
        attrs = name.get_attributes_for_oid(oid)
        if attrs and attrs[0].value:
            parts.append(str(attrs[0].value))
    if not parts:
        parts = [str(attr.value) for attr in name if attr.value]
    return ", ".join(parts) if parts else None


def _cert_date(cert, attr):
    if hasattr(cert, f"{attr}_utc"):
        return getattr(cert, f"{attr}_utc")
    return getattr(cert, attr).replace(tzinfo=timezone.utc)


def inspect_certificate(der):
    """Decode a DER leaf certificate. None when it is absent or unreadable."""
    if not der:
        return None
    try:
        cert = x509.load_der_x509_certificate(der, default_backend())
    except ValueError:
        return None

    info = CertificateInfo(
        issuer=_format_name(cert.issuer),
        subject=_format_name(cert.subject),
        serial_number=format(cert.serial_number, "X"),
    )
    try:
        info.not_before = _cert_date(cert, "not_valid_before")
    except ValueError:
        pass
    try:
        info.not_after = _cert_date(cert, "not_valid_after")
    except ValueError:
        info.not_after_invalid = True

    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        info.dns_names = [str(n).lower() for n in san.get_values_for_type(x509.DNSName)]
    except x509.ExtensionNotFound:
        info.dns_names = None
    return info


def hostname_in_san(hostname, dns_names):
    # literal membership only, wildcard entries do not count
    return hostname.lower() in [entry.lower() for entry in dns_names]


def tls_penalties(protocol, cert_info, hostname, details, now=None, penalties=None):
    """Appends the TLS rubric penalties for one handshake; fills ``details``."""
    now       = now or _utcnow()
    penalties = [] if penalties is None else penalties

    if protocol:
        details.protocol = protocol
        if not protocol.upper().startswith("TLS"):
            penalties.append(Penalty(f"Insecure protocol negotiated: {protocol}", points=10))

    if cert_info is None:
        penalties.append(Penalty("Unable to read TLS certificate details.", cap=5))
        return penalties

    if cert_info.issuer:
        details.issuer = cert_info.issuer
    else:
        penalties.append(Penalty("Certificate issuer information is incomplete.", points=3))

    if cert_info.subject:
        details.subject = cert_info.subject
    if cert_info.serial_number:
        details.serial_number = cert_info.serial_number
    if cert_info.not_before is not None:
        details.valid_from = iso_timestamp(cert_info.not_before)

    if cert_info.not_after is not None:
        details.valid_to          = iso_timestamp(cert_info.not_after)
        days                      = days_between(cert_info.not_after, now)
        details.days_until_expiry = days
        if days < 0:
            penalties.append(Penalty("Certificate is expired.", cap=0))
        elif days <= 7:
            penalties.append(Penalty("Certificate expires within 7 days.", points=12))
        elif days <= 30:
            penalties.append(Penalty("Certificate expires within 30 days.", points=8))
        elif days <= 90:
            penalties.append(Penalty("Certificate expires within 90 days.", points=3))
    elif cert_info.not_after_invalid:
        penalties.append(Penalty("Unable to parse certificate expiration date.", points=4))
    else:
        penalties.append(Penalty("Certificate expiration date is missing.", points=6))

    if cert_info.dns_names:
        details.subject_alt_names = list(cert_info.dns_names)
        if not hostname_in_san(hostname, cert_info.dns_names):
            penalties.append(Penalty(
                "Hostname is not explicitly listed in the certificate SAN entries.", points=5))

    return penalties


def open_tls_session(host, port, timeout):
    """
    Direct handshake with chain verification disabled, so the certificate
    the server actually presents can be inspected. Returns
    (protocol, cipher_name, der_bytes).
    """
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.check_hostname = False
    ctx.verify_mode    = ssl.CERT_NONE
    with socket.create_connection((host, port), timeout=timeout) as sock:
        with ctx.wrap_socket(sock, server_hostname=host) as conn:
            cipher = conn.cipher()
            return conn.version(), (cipher[0] if cipher else None), conn.getpeercert(binary_form=True)


def check_tls(url, timeout=None, now=None):
    timeout = TLS_TIMEOUT if timeout is None else timeout
    try:
        parsed = urllib.parse.urlsplit(url)
        host   = parsed.hostname
        port   = parsed.port or 443
    except ValueError:
        host = None
    if not host:
        return CategoryResult("tls", 0, [
            "The URL is not valid, so the TLS certificate could not be checked."
        ], TlsDetails())

    if parsed.scheme.lower() != "https":
        return CategoryResult("tls", 0, [
            "Site does not use HTTPS; TLS certificate was not evaluated."
        ], TlsDetails(protocol=parsed.scheme.lower()))

    log.info(f"[tls] handshake with {host}:{port}")
    try:
        protocol, cipher, der = open_tls_session(host, port, timeout)
    except socket.timeout:
        return CategoryResult("tls", 0, ["TLS handshake timed out."], TlsDetails())
    except OSError as e:
        log.warning(f"[tls] connection to {host}:{port} failed: {e}")
        return CategoryResult("tls", 0, [
            "Could not establish a TLS connection.", str(e)
        ], TlsDetails(error=str(e)))

    details   = TlsDetails(host=host, port=port, cipher=cipher)
    penalties = []
    try:
        tls_penalties(protocol, inspect_certificate(der), host, details, now, penalties)
    except Exception as e:
        log.warning(f"[tls] inspection of {host} failed: {e}")
        penalties.append(Penalty("TLS inspection failed.", cap=10))
        details.error = str(e)

    return CategoryResult.from_penalties("tls", penalties, details)


# ══════════════════════════════════════════════════════════════════════════════
#  HEADER EVALUATOR
# ══════════════════════════════════════════════════════════════════════════════

class HeaderCheck:
    def __init__(self, key, label, weight, warning, passed):
        self.key     = key
        self.label   = label
        self.weight  = weight
        self.warning = warning
        self.passed  = passed


def _header_value(headers, name):
    value = headers.get(name)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def header_checks(headers):
    """Six-header rubric. ``headers`` must be keyed by lower-cased name."""
    hsts     = _header_value(headers, "strict-transport-security")
    csp      = _header_value(headers, "content-security-policy")
    xfo      = _header_value(headers, "x-frame-options")
    referrer = _header_value(headers, "referrer-policy")
    perms    = _header_value(headers, "permissions-policy")
    xcto     = _header_value(headers, "x-content-type-options")

    frame_ancestors = bool(csp and re.search(r"frame-ancestors\s+", csp, re.IGNORECASE))
    if xfo:
        clickjacking = bool(re.search(r"sameorigin|deny", xfo, re.IGNORECASE))
    else:
        clickjacking = frame_ancestors

    return [
        HeaderCheck("strict-transport-security", "HSTS (Strict-Transport-Security)", 5,
            "Missing Strict-Transport-Security header (HSTS).",
            bool(hsts and re.search(r"max-age=\d+", hsts, re.IGNORECASE))),
        HeaderCheck("content-security-policy", "Content-Security-Policy", 5,
            "Missing Content-Security-Policy header.",
            bool(csp)),
        HeaderCheck("x-frame-options", "Clickjacking protection", 4,
            "Missing X-Frame-Options header or frame-ancestors directive.",
            clickjacking),
        HeaderCheck("referrer-policy", "Referrer-Policy", 4,
            "Missing Referrer-Policy header.",
            bool(referrer and re.search(
                r"no-referrer|strict-origin|strict-origin-when-cross-origin",
                referrer, re.IGNORECASE))),
        HeaderCheck("permissions-policy", "Permissions-Policy", 3,
            "Missing Permissions-Policy header.",
            bool(perms)),
        HeaderCheck("x-content-type-options", "X-Content-Type-Options", 4,
            "Missing X-Content-Type-Options header (nosniff).",
            bool(xcto and xcto.lower() == "nosniff")),
    ]


def check_headers(url, context=None):
    response, error = _resolve_response(url, context)
    if response is None:
        message = str(error) if error is not None else None
        return CategoryResult("headers", 0, [
            "Unable to retrieve the site response headers.", message
        ], HeaderDetails(error=message))

    headers = {k.lower(): str(v).strip() for k, v in response.headers.items() if v is not None}
    checks  = header_checks(headers)
    failed  = [c for c in checks if not c.passed]
    details = HeaderDetails(
        status_code=response.status_code,
        final_url=final_url_of(response, url),
        present_headers=headers,
        missing=[c.label for c in failed],
    )
    log.info(f"[headers] {len(failed)} of {len(checks)} checks failed for {url}")
    return CategoryResult.from_penalties(
        "headers", [Penalty(c.warning, points=c.weight) for c in failed], details)


# ══════════════════════════════════════════════════════════════════════════════
#  COOKIE EVALUATOR
# ══════════════════════════════════════════════════════════════════════════════

def set_cookie_headers(response):
    """Every Set-Cookie line of the final response, unmerged."""
    raw     = getattr(response, "raw", None)
    headers = getattr(raw, "headers", None)
    if headers is not None and hasattr(headers, "getlist"):
        return [v for v in headers.getlist("Set-Cookie") if v and v.strip()]
    value = response.headers.get("Set-Cookie")
    return [value] if value else []


def _cookie_expiry(value):
    try:
        return iso_timestamp(parsedate_to_datetime(value))
    except (TypeError, ValueError, IndexError):
        return None


def parse_set_cookie(line):
    """Tokenize one Set-Cookie line into a CookieInfo (issues left empty)."""
    pair, *attributes = line.split(";")
    name   = pair.partition("=")[0] if "=" in pair else ""
    cookie = CookieInfo(name=name.strip())
    for attr in attributes:
        key, _, value = attr.partition("=")
        key, value = key.strip().lower(), value.strip()
        if key == "secure":
            cookie.secure = True
        elif key == "httponly":
            cookie.http_only = True
        elif key == "samesite":
            cookie.same_site = value.lower() or None
        elif key == "path":
            cookie.path = value
        elif key == "domain":
            cookie.domain = value or None
        elif key == "expires":
            cookie.expires = _cookie_expiry(value)
    return cookie


def cookie_issues(cookie):
    issues = []
    if not cookie.secure:
        issues.append("Missing Secure attribute.")
    if not cookie.http_only:
        issues.append("Missing HttpOnly attribute.")
    if not cookie.same_site:
        issues.append("Missing SameSite attribute.")
    elif cookie.same_site == "none" and not cookie.secure:
        issues.append("SameSite=None cookies must also be Secure.")
    if cookie.name.startswith("__Secure-") and not cookie.secure:
        issues.append("__Secure- cookies must set the Secure flag.")
    if cookie.name.startswith("__Host-"):
        if not cookie.secure:
            issues.append("__Host- cookies must set the Secure flag.")
        if cookie.path != "/":
            issues.append("__Host- cookies must have Path=/")
        if cookie.domain:
            issues.append("__Host- cookies must not specify a Domain attribute.")
    return issues


def check_cookies(url, context=None):
    response, error = _resolve_response(url, context)
    if response is None:
        message = str(error) if error is not None else None
        return CategoryResult("cookies", 0, [
            "Unable to retrieve response cookies.", message
        ], CookieDetails(error=message))

    lines = set_cookie_headers(response)
    if not lines:
        return CategoryResult("cookies", MAX_SCORE, [], CookieDetails(
            total_cookies=0,
            note="No cookies were set during the initial request.",
        ))

    cookies   = []
    penalties = []
    for line in lines:
        cookie        = parse_set_cookie(line)
        cookie.issues = cookie_issues(cookie)
        cookies.append(cookie)
        if cookie.issues:
            penalties.append(Penalty(
                f"{cookie.name}: {' '.join(cookie.issues)}",
                points=COOKIE_ISSUE_PENALTY * len(cookie.issues)))

    insecure = [c for c in cookies if c.issues]
    log.info(f"[cookies] {len(insecure)} of {len(cookies)} cookies have issues for {url}")
    return CategoryResult.from_penalties("cookies", penalties, CookieDetails(
        total_cookies=len(cookies),
        insecure_cookies=len(insecure),
        cookies=cookies,
    ))


# ══════════════════════════════════════════════════════════════════════════════
#  WHOIS EVALUATOR
# ══════════════════════════════════════════════════════════════════════════════

# Registries spell the same field differently; aliases are in priority order.
WHOIS_FIELD_ALIASES = {
    "creation_date": [
        "creationdate", "createddate", "creationtime", "domaincreatedate",
        "registrationtime", "domainregistrationdate", "registered",
    ],
    "expiry_date": [
        "registryexpirydate", "expirationdate", "expirydate",
        "registrarexpirationdate", "domainexpirydate",
    ],
    "registrar": [
        "registrar", "registrarname", "registrarorganization", "sponsoringregistrar",
    ],
    "name_servers": [
        "nameserver", "nameservers", "nameserverserver",
    ],
}

# bundled public suffix snapshot, no network fetch at startup
_extract_domain = tldextract.TLDExtract(suffix_list_urls=())


def registrable_domain(hostname):
    if not hostname:
        return None
    ext = _extract_domain(hostname)
    if not ext.domain or not ext.suffix:
        return None
    return f"{ext.domain}.{ext.suffix}".lower()


def _normalize_key(key):
    return re.sub(r"[\s_\-]", "", str(key).lower())


def normalize_record(record):
    normalized = {}
    for key, value in dict(record).items():
        normalized.setdefault(_normalize_key(key), value)
    return normalized


def pick_value(record, field_name):
    for alias in WHOIS_FIELD_ALIASES[field_name]:
        value = record.get(_normalize_key(alias))
        if value not in (None, "", []):
            return value
    return None


def parse_whois_date(value):
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if isinstance(value, datetime):
        return _as_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return _as_utc(date_parser.parse(value.strip()))
    except (ValueError, OverflowError):
        return None


def _name_server_list(value):
    if not value:
        return []
    if isinstance(value, str):
        value = value.split()
    seen, servers = set(), []
    for entry in value:
        entry = str(entry).strip().lower().rstrip(".")
        if entry and entry not in seen:
            seen.add(entry); servers.append(entry)
    return servers


def _registrar_name(value):
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if value is None:
        return None
    return str(value).strip() or None


def lookup_whois(domain, timeout):
    """
    The socket timeout is handed to python-whois so the worker thread ends on
    its own; the executor deadline still bounds referral chains.
    """
    executor = ThreadPoolExecutor(max_workers=1)
    try:
        future = executor.submit(whois.whois, domain, timeout=max(1, math.ceil(timeout)))
        return future.result(timeout=timeout)
    finally:
        executor.shutdown(wait=False)


def whois_penalties(record, details, now=None):
    """Applies the WHOIS rubric to a normalized record; fills ``details``."""
    now        = now or _utcnow()
    penalties  = []
    creation   = parse_whois_date(pick_value(record, "creation_date"))
    expiry     = parse_whois_date(pick_value(record, "expiry_date"))
    registrar  = _registrar_name(pick_value(record, "registrar"))

    details.registrar    = registrar
    details.name_servers = _name_server_list(pick_value(record, "name_servers"))

    if creation is not None:
        age = days_between(now, creation)
        details.creation_date   = iso_timestamp(creation)
        details.domain_age_days = age
        if age < 30:
            penalties.append(Penalty("Domain was registered within the last 30 days.", points=12))
        elif age < 180:
            penalties.append(Penalty("Domain is relatively new (less than six months old).", points=6))
    else:
        penalties.append(Penalty("Unable to determine domain creation date.", points=6))

    if expiry is not None:
        remaining = days_between(expiry, now)
        details.expiry_date       = iso_timestamp(expiry)
        details.days_until_expiry = remaining
        if remaining <= 0:
            penalties.append(Penalty("Domain appears to be expired.", points=10))
        elif remaining <= 30:
            penalties.append(Penalty("Domain expires within the next 30 days.", points=6))
    else:
        penalties.append(Penalty("Unable to determine domain expiry date.", points=5))

    if not registrar:
        penalties.append(Penalty("Registrar information is missing.", points=3))

    return penalties


def check_whois(url, timeout=None, now=None):
    timeout = WHOIS_TIMEOUT if timeout is None else timeout
    try:
        hostname = urllib.parse.urlsplit(url).hostname
    except ValueError:
        hostname = None
    if not hostname:
        return CategoryResult("whois", 0, [
            "The URL is not valid, so WHOIS information could not be checked."
        ], WhoisDetails())

    domain = registrable_domain(hostname)
    if not domain:
        return CategoryResult("whois", 0, [
            "Unable to determine a registrable domain for WHOIS lookup."
        ], WhoisDetails(hostname=hostname))

    log.info(f"[whois] querying {domain}")
    try:
        record = lookup_whois(domain, timeout)
    except FutureTimeoutError:
        message = f"WHOIS query for {domain} timed out after {timeout:g} seconds."
        log.warning(f"[whois] {message}")
        return CategoryResult("whois", 0, ["WHOIS lookup failed.", message],
                              WhoisDetails(hostname=hostname, domain=domain, error=message))
    except Exception as e:
        log.warning(f"[whois] lookup for {domain} failed: {e}")
        return CategoryResult("whois", 0, ["WHOIS lookup failed.", str(e)],
                              WhoisDetails(hostname=hostname, domain=domain, error=str(e)))

    if not record or not any(v not in (None, "", []) for v in dict(record).values()):
        return CategoryResult("whois", 0, ["WHOIS lookup did not return any data."],
                              WhoisDetails(hostname=hostname, domain=domain))

    details   = WhoisDetails(hostname=hostname, domain=domain)
    penalties = whois_penalties(normalize_record(record), details, now)
    return CategoryResult.from_penalties("whois", penalties, details)


# ══════════════════════════════════════════════════════════════════════════════
#  AGGREGATOR
# ══════════════════════════════════════════════════════════════════════════════

def fallback_result(key, error):
    message = str(error) or error.__class__.__name__
    return CategoryResult(key, 0, ["Check failed to complete.", message],
                          FailureDetails(error=message))


def rate_score(total):
    if total < DANGEROUS_BELOW:
        return "Dangerous"
    if total < WARNING_BELOW:
        return "Warning"
    return "Safe"


def summarize_overall(categories):
    score     = sum(c.score or 0 for c in categories)
    max_score = sum(c.max_score or 0 for c in categories)
    total     = _round_half_up(score / max_score * OVERALL_MAX) if max_score > 0 else 0
    return OverallScore(total, rate_score(total))


def gather_categories(tasks):
    """
    Runs every check concurrently and waits for all of them. A check that
    raises is replaced by a zero-score fallback; results come back in
    CATEGORY_ORDER regardless of completion order.
    """
    results = {}
    with ThreadPoolExecutor(max_workers=len(tasks) or 1) as ex:
        future_map = {ex.submit(fn): key for key, fn in tasks.items()}
        for fut in as_completed(future_map):
            key = future_map[fut]
            try:
                results[key] = fut.result()
                log.info(f"[{key}] score {results[key].score}/{results[key].max_score}")
            except Exception as e:
                log.error(f"[{key}] crashed: {e}")
                results[key] = fallback_result(key, e)
    rank = {k: i for i, k in enumerate(CATEGORY_ORDER)}
    return [results[k] for k in sorted(results, key=lambda k: rank.get(k, len(rank)))]


def run_safety_check(url):
    log.info(f"Starting {SAFEURL_NAME} check: {url}")
    context = fetch_site_response(url)

    categories = gather_categories({
        "tls":     lambda: check_tls(url),
        "headers": lambda: check_headers(url, context),
        "cookies": lambda: check_cookies(url, context),
        "whois":   lambda: check_whois(url),
    })
    overall = summarize_overall(categories)
    log.info(f"Finished {url}: {overall.total}/{overall.max} ({overall.rating})")

    response = context.response
    http = {
        "status":   response.status_code if response is not None else None,
        "finalUrl": context.final_url(url),
        "error":    context.error_message if response is None else None,
    }
    return {
        "url":        url,
        "fetchedAt":  iso_timestamp(),
        "score":      overall.to_dict(),
        "categories": [c.to_dict() for c in categories],
        "http":       {k: v for k, v in http.items() if v is not None},
    }


# ══════════════════════════════════════════════════════════════════════════════
#  FLASK ROUTES
# ══════════════════════════════════════════════════════════════════════════════

@app.route("/check", methods=["POST"])
@app.route("/api/check", methods=["POST"])
def check():
    body = request.get_json(force=True, silent=True)
    if not isinstance(body, dict):
        body = {}
    url, reason = normalize_url(body.get("url"))
    if reason:
        return jsonify({"error": reason}), 400

    try:
        return jsonify(run_safety_check(url)), 200
    except Exception as e:
        log.exception(f"{SAFEURL_NAME} check failed: {e}")
        return jsonify({"error": "Internal check error."}), 500


@app.route("/health", methods=["GET"])
def health():
    return jsonify({"ok": True, "timestamp": iso_timestamp()}), 200


# ══════════════════════════════════════════════════════════════════════════════
#  ENTRY POINT
# ══════════════════════════════════════════════════════════════════════════════

def main():
    print(f"""
  {SAFEURL_NAME} v{SAFEURL_VERSION} — {SAFEURL_TAGLINE}
  Server        : http://{HOST}:{PORT}
  Fetch timeout : {FETCH_TIMEOUT_MS} ms
    """)
    app.run(host=HOST, port=PORT, debug=False)


if __name__ == "__main__":
    main()
