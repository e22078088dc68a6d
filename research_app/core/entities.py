import re
import logging
from bisect import bisect_right
from abc import ABC, abstractmethod
from typing import List, Optional, Dict, Tuple, Set, Pattern

from research_app.models.entity import Person, Company, Product, ExtractedEntities
from research_app.utils.text_utils import collapse_whitespace

logger = logging.getLogger(__name__)

ROLE_WORDS = r"(?:CEO|CTO|CFO|COO|President|Director|Manager|Founder|Co-founder)"
PERSON_NAME = r"([A-Z][a-z]+(?:\s+[A-Z][a-z]+){1,2})"
PROPER_NOUN = r"[A-Z][A-Za-z0-9]+(?:\s+[A-Z][A-Za-z0-9]+)*"
PRODUCT_NAME = r"([A-Z][A-Za-z0-9]+(?:\s+[A-Z0-9][A-Za-z0-9]*)*)"

PERSON_PATTERNS: List[Pattern] = [
    re.compile(ROLE_WORDS + r"\s+" + PERSON_NAME),
    re.compile(PERSON_NAME + r",?\s+" + ROLE_WORDS),
    re.compile(r"\b(?:said|says|according to|told|stated)\s+" + PERSON_NAME),
    re.compile(PERSON_NAME + r"\s+(?:said|says|announced|stated|explained)\b"),
]

# Checked in order; the first hit near a person's name becomes their title.
TITLE_PATTERNS: List[Pattern] = [
    re.compile(r"\b(CEO|Chief Executive Officer)\b", re.IGNORECASE),
    re.compile(r"\b(CTO|Chief Technology Officer)\b", re.IGNORECASE),
    re.compile(r"\b(CFO|Chief Financial Officer)\b", re.IGNORECASE),
    re.compile(r"\b(COO|Chief Operating Officer)\b", re.IGNORECASE),
    re.compile(r"\b(President)\b", re.IGNORECASE),
    re.compile(r"\b(Vice President|VP)\b", re.IGNORECASE),
    re.compile(r"\b(Director)\b", re.IGNORECASE),
    re.compile(r"\b(Manager)\b", re.IGNORECASE),
    re.compile(r"\b(Founder|Co-founder)\b", re.IGNORECASE),
    re.compile(r"\b(Engineer|Developer)\b", re.IGNORECASE),
    re.compile(r"\b(Analyst)\b", re.IGNORECASE),
]

COMPANY_SUFFIXES = [
    "Inc.", "Inc", "Corp.", "Corp", "LLC", "Ltd.", "Ltd", "Company", "Co.",
    "Corporation", "Group", "Holdings", "Partners", "Technologies", "Solutions",
]

COMPANY_SUFFIX_PATTERN = re.compile(
    r"([A-Z][A-Za-z0-9]*(?:\s+[A-Z][A-Za-z0-9]*)*)\s+("
    + "|".join(re.escape(s) for s in COMPANY_SUFFIXES)
    + r")(?![A-Za-z])"
)

COMPANY_PATTERNS: List[Pattern] = [
    re.compile(r"(?i:\b(?:company|startup|firm|corporation)\s+(?:called\s+|named\s+)?)(" + PROPER_NOUN + r")"),
    re.compile(r"(" + PROPER_NOUN + r")\s+(?:announced|launched|released|acquired|raised)\b"),
]

PRODUCT_PATTERNS: List[Pattern] = [
    re.compile(r"(?i:\b(?:launched|announced|released|introduced|unveiled)\s+(?:the\s+)?)" + PRODUCT_NAME),
    re.compile(
        r"(?i:\b(?:new|latest)\s+(?:product|service|platform|tool|app|application)\s+(?:called\s+|named\s+)?)"
        r"([A-Z][A-Za-z0-9]+)"
    ),
    re.compile(PRODUCT_NAME + r"\s+(?:is a|is an|provides|offers|enables)\b"),
]

INDUSTRY_KEYWORDS: Dict[str, List[str]] = {
    "technology": ["software", "tech", "digital", "platform", "cloud", "AI", "data"],
    "finance": ["bank", "financial", "investment", "capital", "fintech", "payment"],
    "healthcare": ["health", "medical", "pharma", "biotech", "healthcare"],
    "retail": ["retail", "commerce", "store", "shopping", "ecommerce"],
    "media": ["media", "entertainment", "news", "publishing", "content"],
}

CALENDAR_WORDS = {
    "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday",
    "January", "February", "March", "April", "May", "June", "July", "August",
    "September", "October", "November", "December",
}
PERSON_FALSE_POSITIVES = {"The Company", "New York", "United States", "According To", "San Francisco", "Wall Street"}
GENERIC_PHRASES = {"The", "This", "That", "Their", "Today", "New", "Latest", "The Company", "It", "We", "They"}

TITLE_WINDOW = 100
RELATIONSHIP_WINDOW = 200
INDUSTRY_WINDOW = 200
# Attribute lookups (employer, location, owner, price) only scan this far around a name.
PROXIMITY_WINDOW = 200
FEATURE_WINDOW = 400
MAX_FEATURES = 5


def normalize_name(name: str) -> str:
    return collapse_whitespace(name)


def name_key(name: str) -> str:
    return normalize_name(name).casefold()


def _window(text: str, name: str, size: int) -> Optional[str]:
    idx = text.find(name)
    if idx == -1:
        return None
    return text[max(0, idx - size): idx + len(name) + size]


class EntityExtractor(ABC):
    """
    Named-entity recognition over accumulated page text. Implementations must not
    perform network calls.
    """
    @abstractmethod
    def extract(self, text: str) -> ExtractedEntities:
        pass


class RegexEntityExtractor(EntityExtractor):
    """
    Heuristic extractor for people, companies and products based on ordered pattern
    rules. Entities are keyed by their normalized name; mentions and context sentences
    accumulate across every match, and each list is sorted by mention count.
    """

    def extract(self, text: str) -> ExtractedEntities:
        text = text or ""
        return ExtractedEntities(
            people=self.extract_people(text),
            companies=self.extract_companies(text),
            products=self.extract_products(text),
        )

    # --- shared helpers ---

    @staticmethod
    def _sentence_spans(text: str) -> List[Tuple[int, int, str]]:
        return [(m.start(), m.end(), m.group().strip()) for m in re.finditer(r"[^.!?]+", text) if m.group().strip()]

    @staticmethod
    def _sentence_at(spans: List[Tuple[int, int, str]], starts: List[int], position: int) -> Optional[str]:
        index = bisect_right(starts, position) - 1
        if index < 0:
            return None
        _, end, sentence = spans[index]
        return sentence if position < end else None

    @staticmethod
    def _first_group(patterns: List[Pattern], text: str) -> Optional[str]:
        for pattern in patterns:
            match = pattern.search(text)
            if match:
                return match.group(1)
        return None

    @staticmethod
    def _is_valid_candidate(name: str) -> bool:
        if not name or len(name) < 2:
            return False
        if name[0].isdigit():
            return False
        if name in CALENDAR_WORDS or name in GENERIC_PHRASES:
            return False
        return True

    def _collect(
        self,
        matches: List[Tuple[str, int]],
        is_valid,
        spans: List[Tuple[int, int, str]],
    ) -> Dict[str, Dict]:
        """
        Folds (raw_name, position) matches into entries keyed by normalized name.
        The same name at the same position is only counted once.
        """
        starts = [start for start, _, _ in spans]
        entries: Dict[str, Dict] = {}
        seen_positions: Set[Tuple[str, int]] = set()
        for raw_name, position in matches:
            name = normalize_name(raw_name)
            if not is_valid(name):
                continue
            key = name_key(name)
            if (key, position) in seen_positions:
                continue
            seen_positions.add((key, position))

            context = self._sentence_at(spans, starts, position)
            entry = entries.get(key)
            if entry is None:
                entries[key] = {"name": name, "mentions": 1, "context": [context] if context else []}
            else:
                entry["mentions"] += 1
                if context and context not in entry["context"]:
                    entry["context"].append(context)
        return entries

    # --- people ---

    @staticmethod
    def _is_valid_person_name(name: str) -> bool:
        if not name or len(name) < 3:
            return False
        if len(name.split(" ")) < 2:
            return False
        if name[0].isdigit():
            return False
        if re.search(r"[^A-Za-z\s\-']", name):
            return False
        return name not in PERSON_FALSE_POSITIVES

    def _title_near(self, text: str, name: str) -> Optional[str]:
        surrounding = _window(text, name, TITLE_WINDOW)
        if surrounding is None:
            return None
        return self._first_group(TITLE_PATTERNS, surrounding)

    def _organization_near(self, text: str, name: str) -> Optional[str]:
        surrounding = _window(text, name, PROXIMITY_WINDOW)
        if surrounding is None:
            return None
        escaped = re.escape(name)
        patterns = [
            re.compile(escaped + r"[^.]*?(?i:\b(?:at|of|from))\s+(" + PROPER_NOUN + r")"),
            re.compile(r"(" + PROPER_NOUN + r")'s\s+" + escaped),
        ]
        return self._first_group(patterns, surrounding)

    @staticmethod
    def _relationships(text: str, name: str, all_names: List[str]) -> List[str]:
        surrounding = _window(text, name, RELATIONSHIP_WINDOW)
        if surrounding is None:
            return []
        return [other for other in all_names if other != name and other in surrounding]

    def extract_people(self, text: str) -> List[Person]:
        spans = self._sentence_spans(text)
        matches = [(m.group(1), m.start(1)) for pattern in PERSON_PATTERNS for m in pattern.finditer(text)]
        entries = self._collect(matches, self._is_valid_person_name, spans)

        names = [entry["name"] for entry in entries.values()]
        people = [
            Person(
                name=entry["name"],
                title=self._title_near(text, entry["name"]),
                organization=self._organization_near(text, entry["name"]),
                relationships=self._relationships(text, entry["name"], names),
                mentions=entry["mentions"],
                context=entry["context"],
            )
            for entry in entries.values()
        ]
        return sorted(people, key=lambda p: p.mentions, reverse=True)

    # --- companies ---

    def _is_likely_company(self, name: str) -> bool:
        if not self._is_valid_candidate(name):
            return False
        if not name[0].isupper():
            return False
        return not re.search(r"[^A-Za-z0-9\s\-&'.]", name)

    @staticmethod
    def _industry_near(text: str, name: str) -> Optional[str]:
        surrounding = _window(text, name, INDUSTRY_WINDOW)
        if surrounding is None:
            return None
        for industry, keywords in INDUSTRY_KEYWORDS.items():
            if any(re.search(r"\b" + re.escape(kw) + r"\b", surrounding, re.IGNORECASE) for kw in keywords):
                return industry
        return None

    def _location_near(self, text: str, name: str) -> Optional[str]:
        surrounding = _window(text, name, PROXIMITY_WINDOW)
        if surrounding is None:
            return None
        escaped = re.escape(name)
        place = r"([A-Z][A-Za-z]+(?:,\s*[A-Z][A-Za-z]+)?)"
        patterns = [
            re.compile(escaped + r"[^.]*?(?i:\b(?:based in|headquartered in|located in))\s+" + place),
            re.compile(place + r"-based\s+" + escaped),
        ]
        return self._first_group(patterns, surrounding)

    def extract_companies(self, text: str) -> List[Company]:
        spans = self._sentence_spans(text)
        matches = [
            (f"{m.group(1)} {m.group(2)}", m.start(1))
            for m in COMPANY_SUFFIX_PATTERN.finditer(text)
        ]
        matches += [(m.group(1), m.start(1)) for pattern in COMPANY_PATTERNS for m in pattern.finditer(text)]
        entries = self._collect(matches, self._is_likely_company, spans)

        companies = [
            Company(
                name=entry["name"],
                industry=self._industry_near(text, entry["name"]),
                location=self._location_near(text, entry["name"]),
                mentions=entry["mentions"],
                context=entry["context"],
            )
            for entry in entries.values()
        ]
        return sorted(companies, key=lambda c: c.mentions, reverse=True)

    # --- products ---

    def _is_likely_product(self, name: str) -> bool:
        if not self._is_valid_candidate(name):
            return False
        return not re.search(r"[^A-Za-z0-9\s\-+.]", name)

    @staticmethod
    def _features(text: str, name: str) -> List[str]:
        surrounding = _window(text, name, FEATURE_WINDOW)
        if surrounding is None:
            return []
        escaped = re.escape(name)
        patterns = [
            re.compile(escaped + r"[^.]*?(?i:\b(?:features?|offers?|provides?|includes?))\s+([^.]+)"),
            re.compile(r"(?i:\b(?:features? of|capabilities of))\s+" + escaped + r"[^.]*?:?\s*([^.]+)"),
        ]
        features: List[str] = []
        for pattern in patterns:
            match = pattern.search(surrounding)
            if not match:
                continue
            for part in re.split(r",|;|\band\b", match.group(1)):
                part = part.strip()
                if len(part) > 2 and part not in features:
                    features.append(part)
        return features[:MAX_FEATURES]

    @staticmethod
    def _price(text: str, name: str) -> Optional[str]:
        surrounding = _window(text, name, PROXIMITY_WINDOW)
        if surrounding is None:
            return None
        pattern = re.compile(
            re.escape(name) + r"[^.]*?(\$[\d,]+(?:\.\d{2})?(?:/(?:month|year|mo|yr))?)",
            re.IGNORECASE,
        )
        match = pattern.search(surrounding)
        return match.group(1) if match else None

    def _product_company(self, text: str, name: str) -> Optional[str]:
        surrounding = _window(text, name, PROXIMITY_WINDOW)
        if surrounding is None:
            return None
        escaped = re.escape(name)
        owner = r"([A-Z][A-Za-z]+(?:\s+[A-Z][A-Za-z]+)*)"
        patterns = [
            re.compile(owner + r"'s\s+" + escaped),
            re.compile(escaped + r"[^.]*?(?i:\b(?:by|from))\s+" + owner),
        ]
        return self._first_group(patterns, surrounding)

    def extract_products(self, text: str) -> List[Product]:
        spans = self._sentence_spans(text)
        matches = [(m.group(1), m.start(1)) for pattern in PRODUCT_PATTERNS for m in pattern.finditer(text)]
        entries = self._collect(matches, self._is_likely_product, spans)

        products = [
            Product(
                name=entry["name"],
                company=self._product_company(text, entry["name"]),
                features=self._features(text, entry["name"]),
                price=self._price(text, entry["name"]),
                mentions=entry["mentions"],
                context=entry["context"],
            )
            for entry in entries.values()
        ]
        return sorted(products, key=lambda p: p.mentions, reverse=True)
