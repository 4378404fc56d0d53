"""Deterministic HTML criteria (tier 1) and page text extraction.

Each tier-1 check runs a named checklist over the parsed DOM; the score
is the passing share of the checklist scaled to 0-10.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from urllib.parse import urlparse

from bs4 import BeautifulSoup, Tag

from worker.effectiveness.types import (
    Criterion,
    CriterionResult,
    ScoringConfig,
    ScoringContext,
)

TRUST_PATTERNS = {
    "testimonials": re.compile(r"testimonial|what our (clients|customers) say|reviews?\b", re.I),
    "case_studies": re.compile(r"case stud(y|ies)|success stor(y|ies)", re.I),
    "credentials": re.compile(r"certified|accredited|award|iso \d{4,5}|soc ?2", re.I),
    "social_proof": re.compile(
        r"trusted by|used by|\d[\d,]*\+? (clients|customers|companies)", re.I
    ),
}

SOCIAL_DOMAINS = ("linkedin.com", "twitter.com", "x.com", "facebook.com", "instagram.com")

CTA_PATTERN = re.compile(
    r"\b(get|start|book|request|schedule|contact|try|sign up|buy|download|talk|demo)\b", re.I
)


def parse_html(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def _visible_text(soup: BeautifulSoup) -> str:
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    return " ".join(soup.get_text(" ").split())


def _checklist_result(
    criterion: Criterion,
    checks: dict[str, bool],
    description: str,
    details: dict,
    context: ScoringContext,
) -> CriterionResult:
    passed = [name for name, ok in checks.items() if ok]
    failed = [name for name, ok in checks.items() if not ok]
    score = 10.0 * len(passed) / len(checks) if checks else 0.0
    return CriterionResult(
        criterion=criterion,
        score=score,
        evidence={
            "description": description,
            "details": details,
            "reasoning": f"{len(passed)} of {len(checks)} checks passed",
            "html_quality": context.html_quality.value,
        },
        passed=passed,
        failed=failed,
    )


def neutral_result(
    criterion: Criterion,
    config: ScoringConfig,
    reason: str,
) -> CriterionResult:
    """Documented neutral score for a criterion with no usable input."""
    return CriterionResult(
        criterion=criterion,
        score=config.neutral_score,
        evidence={
            "neutral": True,
            "reason": reason,
            "description": f"No usable input for {criterion.value}; neutral score applied",
        },
    )


def score_seo(context: ScoringContext, config: ScoringConfig) -> CriterionResult:
    """Basic on-page SEO signals."""
    soup = parse_html(context.html or "")
    title = soup.title.get_text(strip=True) if soup.title else ""
    description_tag = soup.find("meta", attrs={"name": re.compile("^description$", re.I)})
    description = (
        description_tag.get("content", "").strip() if isinstance(description_tag, Tag) else ""
    )
    h1_count = len(soup.find_all("h1"))
    html_tag = soup.find("html")

    checks = {
        "title_length_ok": 10 <= len(title) <= 70,
        "meta_description_present": 50 <= len(description) <= 170,
        "single_h1": h1_count == 1,
        "canonical_present": soup.find("link", rel="canonical") is not None,
        "open_graph_present": soup.find("meta", property="og:title") is not None,
        "lang_declared": isinstance(html_tag, Tag) and bool(html_tag.get("lang")),
        "structured_data_present": soup.find("script", type="application/ld+json") is not None,
    }
    return _checklist_result(
        Criterion.SEO,
        checks,
        "On-page SEO fundamentals",
        {"title": title[:120], "meta_description": description[:200], "h1_count": h1_count},
        context,
    )


def score_accessibility(context: ScoringContext, config: ScoringConfig) -> CriterionResult:
    """Static accessibility signals."""
    soup = parse_html(context.html or "")

    images = soup.find_all("img")
    with_alt = [img for img in images if img.get("alt") is not None]
    alt_coverage = len(with_alt) / len(images) if images else 1.0

    label_targets = {label.get("for") for label in soup.find_all("label") if label.get("for")}
    inputs = [
        field_tag
        for field_tag in soup.find_all(["input", "select", "textarea"])
        if field_tag.get("type") not in ("hidden", "submit", "button")
    ]
    labelled = [
        field_tag
        for field_tag in inputs
        if field_tag.get("aria-label")
        or field_tag.get("aria-labelledby")
        or (field_tag.get("id") and field_tag.get("id") in label_targets)
        or field_tag.find_parent("label") is not None
    ]
    label_coverage = len(labelled) / len(inputs) if inputs else 1.0

    levels = [int(h.name[1]) for h in soup.find_all(re.compile(r"^h[1-6]$"))]
    skipped_levels = any(b - a > 1 for a, b in zip(levels, levels[1:], strict=False))

    links = soup.find_all("a")
    unnamed_links = [
        a
        for a in links
        if not a.get_text(strip=True)
        and not a.get("aria-label")
        and not a.find("img", alt=True)
    ]
    html_tag = soup.find("html")

    checks = {
        "lang_declared": isinstance(html_tag, Tag) and bool(html_tag.get("lang")),
        "images_have_alt": alt_coverage >= 0.9,
        "form_fields_labelled": label_coverage >= 0.9,
        "main_landmark": bool(soup.find("main") or soup.find(attrs={"role": "main"})),
        "nav_landmark": bool(soup.find("nav") or soup.find(attrs={"role": "navigation"})),
        "heading_order": bool(levels) and not skipped_levels,
        "links_have_names": not unnamed_links,
    }
    return _checklist_result(
        Criterion.ACCESSIBILITY,
        checks,
        "Static accessibility checks",
        {
            "images": len(images),
            "alt_coverage": round(alt_coverage, 2),
            "form_fields": len(inputs),
            "label_coverage": round(label_coverage, 2),
            "unnamed_links": len(unnamed_links),
        },
        context,
    )


def score_trust(context: ScoringContext, config: ScoringConfig) -> CriterionResult:
    """Trust and credibility signals."""
    soup = parse_html(context.html or "")
    hrefs = [a.get("href", "") for a in soup.find_all("a")]
    link_texts = " ".join(a.get_text(" ", strip=True).lower() for a in soup.find_all("a"))
    logo_images = [
        img
        for img in soup.find_all("img")
        if "logo"
        in (img.get("alt", "") + img.get("src", "") + " ".join(img.get("class", []))).lower()
    ]
    text = _visible_text(soup)

    signals = {name: bool(pattern.search(text)) for name, pattern in TRUST_PATTERNS.items()}
    checks = {
        "https": urlparse(context.url).scheme == "https",
        "contact_details": any(h.startswith(("tel:", "mailto:")) for h in hrefs)
        or "contact" in link_texts,
        "privacy_policy": "privacy" in link_texts or any("privacy" in h.lower() for h in hrefs),
        "client_logos": len(logo_images) >= 3,
        "social_profiles": any(domain in h for h in hrefs for domain in SOCIAL_DOMAINS),
        **signals,
    }
    return _checklist_result(
        Criterion.TRUST,
        checks,
        "Trust and credibility signals",
        {"logo_images": len(logo_images), "signals": signals},
        context,
    )


def score_ux(context: ScoringContext, config: ScoringConfig) -> CriterionResult:
    """Structural UX signals."""
    soup = parse_html(context.html or "")
    nav = soup.find("nav") or soup.find("header")
    nav_links = nav.find_all("a") if isinstance(nav, Tag) else []
    h1 = soup.find("h1")
    headline = h1.get_text(" ", strip=True) if isinstance(h1, Tag) else ""
    headline_words = len(headline.split())
    text = _visible_text(soup)
    word_count = len(text.split())
    lowered = text.lower()
    buzzword_hits = sum(lowered.count(word) for word in config.buzzwords)

    checks = {
        "viewport_meta": soup.find("meta", attrs={"name": "viewport"}) is not None,
        "navigation_present": len(nav_links) >= 3,
        "navigation_focused": 0 < len(nav_links) <= 12,
        "headline_concise": 0 < headline_words <= config.hero_words,
        "enough_content": word_count >= 150,
        "buzzwords_restrained": buzzword_hits <= 2,
        "footer_present": soup.find("footer") is not None,
        "favicon_present": soup.find("link", rel=lambda r: r and "icon" in r) is not None,
    }
    return _checklist_result(
        Criterion.UX,
        checks,
        "Layout and content structure",
        {
            "nav_links": len(nav_links),
            "headline": headline[:160],
            "headline_words": headline_words,
            "word_count": word_count,
            "buzzword_hits": buzzword_hits,
        },
        context,
    )


@dataclass
class PageText:
    """Text pulled from a page for AI judgment."""

    title: str = ""
    meta_description: str = ""
    headings: list[str] = field(default_factory=list)
    hero: str = ""
    ctas: list[str] = field(default_factory=list)
    body: str = ""


def extract_page_text(html: str, max_chars: int = 6000) -> PageText:
    """Extract title, headings, hero copy, CTA labels and body text."""
    soup = parse_html(html)
    title = soup.title.get_text(strip=True) if soup.title else ""
    description_tag = soup.find("meta", attrs={"name": re.compile("^description$", re.I)})
    meta_description = (
        description_tag.get("content", "").strip() if isinstance(description_tag, Tag) else ""
    )
    headings = [
        h.get_text(" ", strip=True)
        for h in soup.find_all(["h1", "h2", "h3"])
        if h.get_text(strip=True)
    ][:20]

    cta_labels = []
    for el in soup.find_all(["a", "button"]):
        label = el.get_text(" ", strip=True)
        if label and len(label) <= 40 and CTA_PATTERN.search(label):
            cta_labels.append(label)
    ctas = list(dict.fromkeys(cta_labels))[:15]

    body = _visible_text(soup)
    hero = " ".join(body.split()[:60])
    return PageText(
        title=title,
        meta_description=meta_description,
        headings=headings,
        hero=hero,
        ctas=ctas,
        body=body[:max_chars],
    )


def build_text_context(
    criterion: Criterion,
    page: PageText,
    prior_scores: dict[str, float] | None = None,
) -> str:
    """Assemble the text handed to the AI judge for one criterion."""
    parts = [
        f"Title: {page.title}",
        f"Meta description: {page.meta_description}",
        f"Headings: {' | '.join(page.headings)}",
        f"Hero copy: {page.hero}",
    ]
    if criterion == Criterion.CTAS:
        parts.append(f"Call-to-action labels: {', '.join(page.ctas) or 'none found'}")
    else:
        parts.append(f"Body: {page.body}")
    if prior_scores:
        summary = ", ".join(f"{k}={v}" for k, v in sorted(prior_scores.items()))
        parts.append(f"Structural scores already measured: {summary}")
    return "\n".join(parts)


TIER1_CHECKS = {
    Criterion.UX: score_ux,
    Criterion.TRUST: score_trust,
    Criterion.ACCESSIBILITY: score_accessibility,
    Criterion.SEO: score_seo,
}
