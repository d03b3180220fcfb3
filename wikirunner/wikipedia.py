import asyncio
import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import unquote

import requests
from bs4 import BeautifulSoup

from wikirunner.config import HTTP_TIMEOUT_S, MAX_HTML_LINKS, SUMMARY_MAX_CHARS, USER_AGENT, WIKI_API
from wikirunner.errors import FetchError, NotFoundError
from wikirunner.models import Node

logger = logging.getLogger(__name__)

NO_SUMMARY = "No summary available."

# Non-body sections whose links a reader would never click from the article text
STRIPPED_SELECTORS = [
    "div.navbox", "div.vertical-navbox", "table.navbox",
    "div.reflist", "ol.references", "div.mw-references-wrap",
    "div.catlinks", "div.toc", "span.mw-editsection",
    "sup.reference",
]


class WikipediaClient:
    def __init__(self, api_url: str = WIKI_API, user_agent: str = USER_AGENT,
                 timeout: float = HTTP_TIMEOUT_S, session: Optional[requests.Session] = None):
        self.api_url = api_url
        self.user_agent = user_agent
        self.timeout = timeout
        self.http = session or requests.Session()

    def fetch_node(self, title: str) -> Node:
        """
        Fetch a page (following redirects) and return it as a Node: resolved title,
        display label, intro summary and the article-body links in document order.
        """
        title = title.strip()
        if not title:
            raise NotFoundError("Empty title")

        data = self._make_api_request({
            "action": "parse",
            "format": "json",
            "page": title,
            "prop": "text|displaytitle",
            "redirects": 1,
        })
        if "error" in data:
            info = data["error"].get("info", data["error"])
            raise NotFoundError(f"Wikipedia page not found: {title} ({info})")

        try:
            parsed = data["parse"]
            resolved = parsed["title"]
            display = parsed.get("displaytitle") or resolved
            html = parsed["text"]["*"]
        except (KeyError, TypeError, AttributeError) as e:
            raise FetchError(f"Unexpected parse response for {title}: {e!r}") from e

        label = BeautifulSoup(display, "lxml").get_text().strip() or resolved
        links = extract_body_links(html)

        return Node(
            title=resolved,
            label=label,
            summary=self.get_summary(resolved),
            links=tuple(links),
        )

    def get_summary(self, title: str, max_chars: int = SUMMARY_MAX_CHARS) -> str:
        """
        Get the plain-text intro of a page, whitespace-collapsed and truncated.
        """
        data = self._make_api_request({
            "action": "query", "format": "json",
            "prop": "extracts", "explaintext": 1, "exintro": 1,
            "redirects": 1, "titles": title,
        })
        pages = data.get("query", {}).get("pages", {})
        page = next(iter(pages.values()), {})
        extract = re.sub(r"\s+", " ", (page.get("extract") or "")).strip()
        return extract[:max_chars] or NO_SUMMARY

    def fetch_random_title(self) -> str:
        data = self._make_api_request({
            "action": "query", "format": "json",
            "list": "random", "rnnamespace": 0, "rnlimit": 1,
        })
        try:
            return data["query"]["random"][0]["title"]
        except (KeyError, IndexError) as e:
            raise FetchError(f"Unexpected response for a random page: {e}") from e

    def search(self, query: str, limit: int = 5) -> List[str]:
        """
        Search titles with opensearch, returning at most `limit` matches in ranked order.
        """
        data = self._make_api_request({
            "action": "opensearch", "format": "json",
            "search": query, "limit": limit, "namespace": 0,
        })
        if isinstance(data, list) and len(data) >= 2:
            return list(data[1])[:limit]
        return []

    def _make_api_request(self, params: Dict[str, Any]) -> Any:
        """
        Make a GET request to the MediaWiki API using a dictionary of parameters. Returns the JSON response.
        """
        headers = {
            "User-Agent": self.user_agent
        }

        logger.debug("MediaWiki request %s", params.get("action"))
        try:
            response = self.http.get(self.api_url, params=params, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.Timeout as e:
            raise FetchError("Request to Wikipedia API timed out") from e
        except requests.RequestException as e:
            raise FetchError(f"Error making API request: {e}") from e
        except ValueError as e:
            raise FetchError(f"Wikipedia API returned invalid JSON: {e}") from e


def extract_body_links(html: str, max_total: int = MAX_HTML_LINKS) -> List[str]:
    """
    Extract human-clickable article links from rendered page HTML, in document order.
    Repeated links are kept; namespaced pages, redlinks and Main Page are skipped.
    """
    soup = BeautifulSoup(html, "lxml")
    root = soup.find("div", class_="mw-parser-output") or soup

    for selector in STRIPPED_SELECTORS:
        for node in root.select(selector):
            node.decompose()

    titles: List[str] = []
    for a in root.find_all("a", href=True):
        href = a["href"]
        if not href.startswith("/wiki/"):
            continue

        classes = a.get("class") or []
        if "new" in classes:  # redlink
            continue

        slug = href.split("/wiki/", 1)[1].split("#", 1)[0]
        if not slug:
            continue

        # main namespace only
        if ":" in slug:
            continue

        t = a.get("title")
        if not t:
            t = unquote(slug).replace("_", " ")
        t = t.strip()
        if not t or t == "Main Page":
            continue

        titles.append(t)
        if len(titles) >= max_total:
            break

    return titles


class WikipediaSource:
    """
    Coroutine front for WikipediaClient. HTTP calls block, so they run in a worker
    thread and the event loop driving a run stays free to honor pause, abort and
    the wall-clock timer.
    """

    def __init__(self, client: Optional[WikipediaClient] = None):
        self.client = client or WikipediaClient()

    async def fetch_node(self, title: str) -> Node:
        return await asyncio.to_thread(self.client.fetch_node, title)

    async def fetch_random_title(self) -> str:
        return await asyncio.to_thread(self.client.fetch_random_title)

    async def search(self, query: str) -> List[str]:
        return await asyncio.to_thread(self.client.search, query)
