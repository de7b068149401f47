"""
smartmarks/rules.py — Deterministic classification rules.

Three tables, consulted by the classifier in this order:
  DOMAIN_CATEGORIES  exact host (www. stripped) → fine category     source "domain"
  PATH_HINTS         ordered (regex, category) over path+query       source "path"
  KEYWORDS           category → keywords counted in the text bag     source "keyword"

Every category a rule produces passes through map_to_general(), which folds
fine categories into the broad taxonomy (devops → developer/devops, ...).
Unmapped slugs pass through unchanged.

Everything here is pure. Config can append extra domains/keywords via
RuleSet.from_config(); built-ins always come first.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable
from urllib.parse import urlsplit

from config import Config


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

DOMAIN_CATEGORIES: dict[str, str] = {
    "cloudflare.com":                "devops",
    "dash.cloudflare.com":           "devops",
    "aws.amazon.com":                "cloud",
    "console.aws.amazon.com":        "cloud",
    "amazonaws.com":                 "cloud",
    "oraclecloud.com":               "cloud",
    "octopus.do":                    "uxui",
    "figma.com":                     "uxui",
    "ahrefs.com":                    "seo",
    "gtmetrix.com":                  "qa",
    "pagespeed.web.dev":             "qa",
    "campaignmonitor.com":           "docs",
    "docs.google.com":               "docs",
    "google.com":                    "docs",
    "youtube.com":                   "media",
    "ssyoutube.com":                 "media",
    "codepen.io":                    "frontend",
    "cssgradient.io":                "frontend",
    "vercel.com":                    "frontend",
    "github.com":                    "programming",
    "gitlab.com":                    "programming",
    "stackoverflow.com":             "programming",
    "mailtrap.io":                   "devops",
    "grafana.com":                   "devops",
    "screamingfrog.co.uk":           "seo",
    "totalworkplace.sharepoint.com": "docs",
    "office.com":                    "docs",
    "sharepoint.com":                "docs",
    "onedrive.live.com":             "docs",
    "git-codecommit.amazonaws.com":  "cloud",
    "codecommit.amazonaws.com":      "cloud",
}

GENERAL_CATEGORIES: dict[str, str] = {
    "devops":                 "developer/devops",
    "cloud":                  "developer/cloud",
    "frontend":               "developer/frontend",
    "backend":                "developer/backend",
    "cms":                    "workspaces/cms",
    "programming":            "developer/programming",
    "online-tools":           "tools/free-tools",
    "uxui":                   "tools/design-tools",
    "seo":                    "tools/seo-tools",
    "qa":                     "developer/qa",
    "media":                  "media",
    "docs":                   "docs",
    "ecommerce":              "shopping",
    "education":              "learning",
    "other":                  "other",
    "workspaces/login-pages": "workspaces/login-pages",
}

# Declared order is the tie-break: admin consoles win over login pages.
PATH_HINTS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"/cp/dashboard|/wp-admin|cpsess|:2083|/admin", re.I), "cms"),
    (re.compile(r"/login|signin|sign-in|auth", re.I),                  "workspaces/login-pages"),
    (re.compile(r"/(design|proto|node-id|canvas|drawio)", re.I),       "uxui"),
    (re.compile(r"/(seo|sitemap|lighthouse|analysis)", re.I),          "seo"),
    (re.compile(r"/(speed|load|perf|gtmetrix)", re.I),                 "qa"),
    (re.compile(r"/(convert|resize|encode|decode)", re.I),             "online-tools"),
    (re.compile(r"/(media|video|download|mp4)", re.I),                 "media"),
    (re.compile(r"/(docs|document|sheet|slides)", re.I),               "docs"),
    (re.compile(r"/(faq|guide|tutorial|help|knowledge)", re.I),        "docs"),
    (re.compile(r"/(graphql|api|rest)", re.I),                         "programming"),
    (re.compile(r"/(shop|store|cart|product|products|checkout|ecommerce)", re.I), "ecommerce"),
    (re.compile(r"/(course|courses|college|university|school|training|learn|education)", re.I),
     "education"),
]

KEYWORDS: dict[str, list[str]] = {
    "devops": ["cloudflare", "grafana", "mailtrap", "cicd", "pipeline", "monitoring",
               "kubernetes", "helm", "prometheus", "ansible", "nginx", "ingress", "dns",
               "waf", "ssl", "tls", "cert"],
    "cloud": ["aws", "s3", "ec2", "rds", "route 53", "oci", "oracle cloud", "gcp", "azure",
              "iam", "vpc", "compute"],
    "frontend": ["react", "next", "vue", "angular", "css", "tailwind", "sass", "vite",
                 "webpack", "storybook", "component", "ui", "codepen", "gradient",
                 "cssgradient", "vercel"],
    "uxui": ["figma", "wireframe", "prototype", "ux", "ui", "design system", "octopus",
             "draw.io", "diagrams", "octopus.do", "node-id"],
    "seo": ["ahrefs", "semrush", "sitemap", "backlink", "schema", "gsc", "gigalist", "seo"],
    "qa": ["gtmetrix", "lighthouse", "browserstack", "lambda test", "pentest", "performance",
           "testing", "qa", "qa tools"],
    "docs": ["docs", "document", "slides", "sheet", "confluence", "wiki", "guide",
             "checklist", "documentation"],
    "media": ["video", "mp4", "youtube", "downloader", "suno", "pixlr", "shots", "mockup",
              "media", "image", "png", "jpg"],
    "cms": ["cpanel", "wp-admin", "statamic", "drupal", "content", "cms", "collection",
            "entries", "admin", "cp/dashboard"],
    "programming": ["github", "gitlab", "code", "repo", "er diagram", "drawio", "query", "api",
                    "swagger", "graphql", "postman", "json", "csv"],
    "online-tools": ["converter", "encode", "decode", "resize", "favicon", "uuid", "formatter",
                     "dns", "whatsmydns", "tool", "online"],
    "ecommerce": ["shop", "store", "cart", "checkout", "ecommerce", "shopping", "product",
                  "seller", "buyer", "order", "price", "customer"],
    "education": ["education", "college", "university", "school", "course", "courses",
                  "learning", "training", "academy", "class", "students"],
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def map_to_general(category: str) -> str:
    return GENERAL_CATEGORIES.get(category, category)


def split_url(url: str) -> tuple[str, str]:
    """
    (host, path) for rule matching: host lowercased without a leading www.,
    path is path+query lowercased. Unparseable urls give ("", "").
    """
    try:
        parts = urlsplit(url or "")
        host = (parts.hostname or "").lower()
    except ValueError:
        return "", ""
    if host.startswith("www."):
        host = host[4:]
    path = parts.path + (f"?{parts.query}" if parts.query else "")
    return host, path.lower()


@dataclass(frozen=True)
class RuleMatch:
    category: str   # already normalized through map_to_general
    source:   str   # domain | path | keyword


# ---------------------------------------------------------------------------
# RuleSet
# ---------------------------------------------------------------------------

@dataclass
class RuleSet:
    domains:  dict[str, str] = field(default_factory=lambda: dict(DOMAIN_CATEGORIES))
    paths:    list[tuple[re.Pattern[str], str]] = field(default_factory=lambda: list(PATH_HINTS))
    keywords: dict[str, list[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in KEYWORDS.items()}
    )

    @classmethod
    def from_config(cls, cfg_obj: Config) -> "RuleSet":
        return cls.with_extras(cfg_obj.extra_domains, cfg_obj.extra_keywords)

    @classmethod
    def with_extras(
        cls,
        extra_domains: dict[str, str] | None = None,
        extra_keywords: dict[str, Iterable[str]] | None = None,
    ) -> "RuleSet":
        rs = cls()
        for host, cat in (extra_domains or {}).items():
            host = host.lower()
            rs.domains.setdefault(host[4:] if host.startswith("www.") else host, cat)
        for cat, words in (extra_keywords or {}).items():
            bucket = rs.keywords.setdefault(cat, [])
            bucket.extend(w.lower() for w in words if w.lower() not in bucket)
        return rs

    # --- individual rules ---

    def match_domain(self, host: str) -> str | None:
        cat = self.domains.get(host)
        return map_to_general(cat) if cat else None

    def match_path(self, path: str) -> str | None:
        for rx, cat in self.paths:
            if rx.search(path):
                return map_to_general(cat)
        return None

    def score_keywords(self, bag: str) -> dict[str, int]:
        return {cat: sum(1 for w in words if w in bag) for cat, words in self.keywords.items()}

    def best_keyword(self, bag: str) -> str | None:
        """Strictly highest positive score; ties keep the first-declared category."""
        best, best_score = None, 0
        for cat, score in self.score_keywords(bag or "").items():
            if score > best_score:
                best, best_score = cat, score
        return map_to_general(best) if best else None

    # --- combined ---

    def apply_structural(self, host: str, path: str) -> RuleMatch | None:
        """Domain then path. The classifier runs remote providers between these and keywords."""
        cat = self.match_domain(host)
        if cat:
            return RuleMatch(cat, "domain")
        cat = self.match_path(path)
        if cat:
            return RuleMatch(cat, "path")
        return None

    def apply_rules(self, host: str, path: str, bag: str) -> RuleMatch | None:
        match = self.apply_structural(host, path)
        if match:
            return match
        cat = self.best_keyword(bag)
        return RuleMatch(cat, "keyword") if cat else None


_DEFAULT = RuleSet()


def apply_rules(host: str, path: str, bag: str) -> RuleMatch | None:
    """Built-in tables only."""
    return _DEFAULT.apply_rules(host, path, bag)
