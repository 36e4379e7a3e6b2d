import argparse
import json
import logging
import os
import re
import sys
import time
from dataclasses import dataclass

import requests
from dotenv import load_dotenv

DEFAULT_BASE_URL = "https://assessment.ksensetech.com/api"

BP_PATTERN = re.compile(r"[0-9]{2,3}/[0-9]{2,3}")
BP_NUMBER = re.compile(r"[0-9]+(\.[0-9]+)?")

FEVER_THRESHOLD = 99.6
VALID_AGE = (0, 120)
VALID_TEMP = (90, 110)

log = logging.getLogger(__name__)


class AssessmentError(Exception):
    pass


class ConfigError(AssessmentError):
    pass


class TransientFetchError(AssessmentError):
    pass


class RateLimitedError(AssessmentError):
    pass


@dataclass
class Config:
    api_key: str
    base_url: str = DEFAULT_BASE_URL
    page_size: int = 10
    max_retries: int = 5
    retry_delay: float = 1.5
    rate_limit_delay: float = 2.0
    rate_limit_max_delay: float = 30.0
    timeout: float = 30

    @classmethod
    def from_env(cls, **overrides):
        """Build a config from the process environment (and a .env file if present)."""
        load_dotenv()
        api_key = os.getenv("API_KEY")
        if not api_key:
            raise ConfigError("API_KEY not found. Set it in the environment or a .env file.")
        base_url = overrides.pop("base_url", None) or os.getenv("BASE_URL") or DEFAULT_BASE_URL
        return cls(api_key=api_key, base_url=base_url.rstrip("/"), **overrides)

    @property
    def headers(self):
        return {"x-api-key": self.api_key}


def setup_logging(level="INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
        force=True,
    )


# ----------------- fetching -----------------

def fetch_page(config, page):
    """Request one page. Returns the parsed body or raises RateLimitedError / TransientFetchError."""
    url = f"{config.base_url}/patients"
    params = {"page": page, "limit": config.page_size}
    try:
        r = requests.get(url, headers=config.headers, params=params, timeout=config.timeout)
    except requests.RequestException as e:
        raise TransientFetchError(f"request failed: {e}") from e

    if r.status_code == 429:
        raise RateLimitedError("rate limited")
    if not r.ok:
        raise TransientFetchError(f"HTTP error: {r.status_code}")

    try:
        body = r.json()
    except ValueError as e:
        raise TransientFetchError("response body is not JSON") from e
    if not isinstance(body, dict) or not isinstance(body.get("data"), list):
        raise TransientFetchError("response has no data array")
    return body


def rate_limit_wait(config, attempt):
    return min(config.rate_limit_delay * (2 ** attempt), config.rate_limit_max_delay)


def fetch_all_patients(config, sleep=time.sleep):
    patients = []
    page = 1
    retries = 0
    rate_limited = 0

    while True:
        try:
            body = fetch_page(config, page)
        except RateLimitedError:
            wait = rate_limit_wait(config, rate_limited)
            rate_limited += 1
            log.warning(f"Rate limited on page {page}, retrying in {wait:g} seconds...")
            sleep(wait)
            continue
        except TransientFetchError as e:
            retries += 1
            log.warning(f"Error fetching page {page}: {e}, retrying... ({retries})")
            if retries >= config.max_retries:
                log.error("Max retries reached. Stopping fetch.")
                break
            sleep(config.retry_delay)
            continue

        patients.extend(body["data"])
        retries = 0
        rate_limited = 0
        log.info(f"Page {page}: {len(body['data'])} patients (total {len(patients)})")

        pagination = body.get("pagination") or {}
        if not pagination.get("hasNext"):
            break
        page += 1

    return patients


# ----------------- scoring -----------------

def is_number(value):
    # bool is an int subclass but never a reading
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_blood_pressure(bp):
    if not isinstance(bp, str) or bp.count("/") != 1:
        return None
    s, d = (part.strip() for part in bp.split("/"))
    if not (BP_NUMBER.fullmatch(s) and BP_NUMBER.fullmatch(d)):
        return None
    return float(s), float(d)


def blood_pressure_score(bp):
    parsed = parse_blood_pressure(bp)
    if parsed is None:
        return 0
    s, d = parsed
    if s < 120 and d < 80:
        return 1  # normal
    if 120 <= s <= 129 and d < 80:
        return 2  # elevated
    if 130 <= s <= 139 or 80 <= d <= 89:
        return 3  # stage 1
    if s >= 140 or d >= 90:
        return 4  # stage 2
    return 0


def temperature_score(temp):
    if not is_number(temp):
        return 0
    if temp <= 99.5:
        return 0
    if 99.6 <= temp <= 100.9:
        return 1
    if temp >= 101.0:
        return 2
    return 0


def age_score(age):
    if not is_number(age):
        return 0
    if age > 65:
        return 2
    return 1


@dataclass
class RiskScore:
    blood_pressure: int = 0
    temperature: int = 0
    age: int = 0


def score_patient(patient):
    return RiskScore(
        blood_pressure=blood_pressure_score(patient.get("blood_pressure")),
        temperature=temperature_score(patient.get("temperature")),
        age=age_score(patient.get("age")),
    )


# ----------------- classification -----------------

def is_high_risk(score):
    return score.blood_pressure >= 4 or (score.blood_pressure >= 3 and score.temperature >= 1)


def is_fever(patient):
    temp = patient.get("temperature")
    return is_number(temp) and temp >= FEVER_THRESHOLD


def in_range(value, bounds):
    low, high = bounds
    return is_number(value) and low <= value <= high


def has_data_quality_issue(patient):
    bp = patient.get("blood_pressure")
    if not isinstance(bp, str) or not BP_PATTERN.fullmatch(bp):
        return True
    if not in_range(patient.get("age"), VALID_AGE):
        return True
    if not in_range(patient.get("temperature"), VALID_TEMP):
        return True
    return False


def classify_patients(patients):
    high_risk = []
    fever = []
    data_issues = {}  # insertion-ordered set

    for p in patients:
        pid = p.get("patient_id")
        score = score_patient(p)

        if is_high_risk(score):
            high_risk.append(pid)
        if is_fever(p):
            fever.append(pid)
        if has_data_quality_issue(p):
            data_issues[pid] = None

    return {
        "high_risk_patients": high_risk,
        "fever_patients": fever,
        "data_quality_issues": list(data_issues),
    }


# ----------------- submission -----------------

def submit_assessment(config, results):
    url = f"{config.base_url}/submit-assessment"
    headers = {**config.headers, "Content-Type": "application/json"}
    r = requests.post(url, headers=headers, json=results, timeout=config.timeout)
    r.raise_for_status()
    resp = r.json()
    log.info("Submission response:\n" + json.dumps(resp, indent=2))
    return resp


# ----------------- main -----------------

def run(config, dry_run=False, sleep=time.sleep):
    log.info("Fetching patients...")
    patients = fetch_all_patients(config, sleep=sleep)
    log.info(f"Fetched {len(patients)} patients")

    results = classify_patients(patients)
    counts = {k: len(v) for k, v in results.items()}
    log.info(f"Counts: {counts}")

    if dry_run:
        log.info("Dry run, not submitting:\n" + json.dumps(results, indent=2))
        return results

    log.info("Submitting...")
    submit_assessment(config, results)
    return results


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="Score patients and submit the risk assessment.")
    ap.add_argument("--base-url", default=None, help=f"API base URL (default: $BASE_URL or {DEFAULT_BASE_URL})")
    ap.add_argument("--log-level", default="INFO", type=str.upper, choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    ap.add_argument("--dry-run", action="store_true", help="classify and print results without submitting")
    return ap.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = Config.from_env(base_url=args.base_url)
    except ConfigError as e:
        log.error(str(e))
        sys.exit(1)

    run(config, dry_run=args.dry_run)


if __name__ == "__main__":
    main()
