import asyncio
import logging
import random
from dataclasses import dataclass, field

from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Response,
    Error as PlaywrightError,
    async_playwright,
)

from marketpulse.core.metrics import active_browser_sessions
from marketpulse.services.proxy import Proxy

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Realistic fingerprint data, rotated per session
# ---------------------------------------------------------------------------

CHROME_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36 Edg/125.0.0.0",
]

VIEWPORTS = [
    {"width": 1920, "height": 1080},
    {"width": 1366, "height": 768},
    {"width": 1440, "height": 900},
    {"width": 1536, "height": 864},
    {"width": 1680, "height": 1050},
]

TIMEZONES = [
    "America/New_York",
    "America/Chicago",
    "America/Los_Angeles",
    "Europe/London",
    "Europe/Amsterdam",
]

WEBGL_RENDERERS = [
    ("Intel Inc.", "Intel Iris OpenGL Engine"),
    (
        "Google Inc. (NVIDIA)",
        "ANGLE (NVIDIA, NVIDIA GeForce RTX 3060 Direct3D11 vs_5_0 ps_5_0, D3D11)",
    ),
    (
        "Google Inc. (Intel)",
        "ANGLE (Intel, Intel(R) UHD Graphics 630 Direct3D11 vs_5_0 ps_5_0, D3D11)",
    ),
    (
        "Google Inc. (AMD)",
        "ANGLE (AMD, AMD Radeon RX 580 Direct3D11 vs_5_0 ps_5_0, D3D11)",
    ),
    ("Google Inc. (Apple)", "ANGLE (Apple, Apple M1, OpenGL 4.1)"),
]

LANGUAGES = ["en-US", "en"]

# ---------------------------------------------------------------------------
# Request interception: ad/tracker and heavy resource blocking
# ---------------------------------------------------------------------------

AD_SERVING_DOMAINS = frozenset(
    {
        "doubleclick.net",
        "adservice.google.com",
        "googlesyndication.com",
        "googletagmanager.com",
        "google-analytics.com",
        "amazon-adsystem.com",
        "adnxs.com",
        "criteo.com",
        "outbrain.com",
        "taboola.com",
        "scorecardresearch.com",
        "hotjar.com",
    }
)

BLOCKED_RESOURCE_TYPES = frozenset({"image", "font", "media"})

# ---------------------------------------------------------------------------
# Bot-challenge markers
# ---------------------------------------------------------------------------

CHALLENGE_SELECTORS = (
    "iframe[src*='recaptcha']",
    "iframe[src*='hcaptcha.com']",
    "iframe[src*='challenges.cloudflare.com']",
    "div.g-recaptcha",
    "div.h-captcha",
)
CHALLENGE_TEXT_MARKERS = (
    "verify you are human",
    "verify you're human",
    "are you a robot",
    "unusual traffic from your computer",
)


def _hostname(url: str) -> str:
    try:
        after_scheme = url.split("//", 1)[1]
        return after_scheme.split("/", 1)[0].split(":")[0].lower()
    except IndexError:
        return ""


def should_block(url: str, resource_type: str, block_resources: bool) -> bool:
    """Decide whether a request is dropped before it leaves the browser."""
    hostname = _hostname(url)
    if hostname and any(domain in hostname for domain in AD_SERVING_DOMAINS):
        return True
    return block_resources and resource_type in BLOCKED_RESOURCE_TYPES


async def _setup_route_blocking(context: BrowserContext, block_resources: bool = True):
    """Abort ad/tracking requests and, optionally, images, fonts and media."""

    async def _route_handler(route, request):
        if should_block(request.url, request.resource_type, block_resources):
            await route.abort()
        else:
            await route.continue_()

    await context.route("**/*", _route_handler)


# ---------------------------------------------------------------------------
# Stealth init script
# Patches: navigator.webdriver, plugins, languages, platform, hardware,
# chrome runtime, WebGL vendor/renderer, permissions.query, idle mouse moves
# ---------------------------------------------------------------------------


def build_stealth_script(
    webgl_vendor: str,
    webgl_renderer: str,
    hw_concurrency: int,
    device_mem: int,
    languages: list[str] | None = None,
) -> str:
    """Build the per-session init script. Values are fixed for the session."""
    langs = ", ".join(f"'{lang}'" for lang in (languages or LANGUAGES))
    return f"""
// navigator.webdriver
Object.defineProperty(navigator, 'webdriver', {{ get: () => false }});
delete navigator.__proto__.webdriver;

Object.defineProperty(navigator, 'languages', {{ get: () => [{langs}] }});

const ua = navigator.userAgent;
if (ua.includes('Win')) {{
    Object.defineProperty(navigator, 'platform', {{ get: () => 'Win32' }});
}} else if (ua.includes('Mac')) {{
    Object.defineProperty(navigator, 'platform', {{ get: () => 'MacIntel' }});
}} else if (ua.includes('Linux')) {{
    Object.defineProperty(navigator, 'platform', {{ get: () => 'Linux x86_64' }});
}}

Object.defineProperty(navigator, 'hardwareConcurrency', {{ get: () => {hw_concurrency} }});
Object.defineProperty(navigator, 'deviceMemory', {{ get: () => {device_mem} }});

// Chrome runtime (missing in headless)
window.chrome = window.chrome || {{
    runtime: {{ connect: function() {{}}, sendMessage: function() {{}}, id: undefined }},
    loadTimes: function() {{ return {{}}; }},
    csi: function() {{ return {{}}; }},
}};

// Plugins (headless has 0 plugins)
const makePlugin = (name, desc, filename) => {{
    const plugin = Object.create(Plugin.prototype);
    Object.defineProperties(plugin, {{
        name: {{ value: name, enumerable: true }},
        description: {{ value: desc, enumerable: true }},
        filename: {{ value: filename, enumerable: true }},
        length: {{ value: 1, enumerable: true }},
    }});
    return plugin;
}};
const plugins = [
    makePlugin('Chrome PDF Plugin', 'Portable Document Format', 'internal-pdf-viewer'),
    makePlugin('Chrome PDF Viewer', 'Portable Document Format', 'mhjfbmdgcfjbbpaeojofohoefgiehjai'),
    makePlugin('Native Client', 'Native Client Executable', 'internal-nacl-plugin'),
];
Object.defineProperty(navigator, 'plugins', {{
    get: () => {{
        const arr = Object.create(PluginArray.prototype);
        plugins.forEach((p, i) => {{ arr[i] = p; }});
        Object.defineProperty(arr, 'length', {{ value: plugins.length }});
        arr.item = (i) => plugins[i];
        arr.namedItem = (name) => plugins.find(p => p.name === name);
        arr.refresh = () => {{}};
        return arr;
    }},
}});

// WebGL vendor / renderer
const glVendor = '{webgl_vendor}';
const glRenderer = '{webgl_renderer}';
const patchWebGL = (proto) => {{
    if (!proto) return;
    const orig = proto.getParameter;
    proto.getParameter = function(param) {{
        if (param === 37445) return glVendor;
        if (param === 37446) return glRenderer;
        return orig.call(this, param);
    }};
}};
patchWebGL(WebGLRenderingContext.prototype);
if (window.WebGL2RenderingContext) patchWebGL(WebGL2RenderingContext.prototype);

// Permissions: headless reports 'denied' for notifications while
// Notification.permission says 'default'
if (window.navigator.permissions) {{
    const originalQuery = window.navigator.permissions.query.bind(window.navigator.permissions);
    window.navigator.permissions.query = (parameters) => (
        parameters && parameters.name === 'notifications'
            ? Promise.resolve({{ state: Notification.permission }})
            : originalQuery(parameters)
    );
}}

// Idle mouse movement at random positions and intervals
(function() {{
    const move = () => {{
        const evt = new MouseEvent('mousemove', {{
            view: window,
            bubbles: true,
            cancelable: true,
            clientX: Math.floor(Math.random() * window.innerWidth),
            clientY: Math.floor(Math.random() * window.innerHeight),
        }});
        document.dispatchEvent(evt);
        setTimeout(move, Math.floor(Math.random() * 5000) + 1000);
    }};
    window.addEventListener('load', () => setTimeout(move, 1000));
}})();
"""


# ---------------------------------------------------------------------------
# Page helpers
# ---------------------------------------------------------------------------


async def goto_with_retry(
    page: Page,
    url: str,
    max_retries: int = 3,
    retry_delay: float = 2.0,
    wait_until: str = "networkidle",
    timeout: float | None = None,
) -> Response | None:
    """Navigate with fixed-delay retries and return the main response.

    This is page-level only and separate from the job-level retry engine.
    The last navigation error is re-raised once every try has failed.
    """
    goto_kwargs = {"wait_until": wait_until}
    if timeout is not None:
        goto_kwargs["timeout"] = timeout

    for attempt in range(1, max_retries + 1):
        try:
            return await page.goto(url, **goto_kwargs)
        except PlaywrightError as e:
            logger.warning(f"Navigation error (attempt {attempt}/{max_retries}): {e}")
            if attempt >= max_retries:
                logger.error(f"Failed to navigate to {url} after {max_retries} attempts")
                raise
            await asyncio.sleep(retry_delay)
    return None


async def navigate_with_retry(
    page: Page,
    url: str,
    max_retries: int = 3,
    retry_delay: float = 2.0,
    wait_until: str = "networkidle",
    timeout: float | None = None,
) -> bool:
    """Same as ``goto_with_retry`` but reports failure as False instead of raising."""
    try:
        await goto_with_retry(page, url, max_retries, retry_delay, wait_until, timeout)
    except PlaywrightError:
        return False
    return True


async def random_delay(min_ms: int = 1000, max_ms: int = 5000) -> None:
    """Sleep a random, human-like interval."""
    await asyncio.sleep(random.randint(min_ms, max_ms) / 1000)


@dataclass
class SessionOptions:
    """Per-session overrides. Unset values are drawn at random."""

    user_agent: str | None = None
    viewport: dict | None = None
    timezone_id: str | None = None
    locale: str = "en-US"
    block_resources: bool | None = None
    extra_headers: dict[str, str] = field(default_factory=dict)


class BrowserSession:
    """One browser + context bound to one proxy, owned by exactly one job."""

    def __init__(
        self,
        manager: "BrowserSessionManager",
        browser: Browser,
        context: BrowserContext,
        proxy: Proxy | None,
        user_agent: str,
    ):
        self._manager = manager
        self._browser = browser
        self._context = context
        self._proxy = proxy
        self._pages: list[Page] = []
        self._closed = False
        self.user_agent = user_agent

    @property
    def proxy(self) -> Proxy | None:
        return self._proxy

    @property
    def closed(self) -> bool:
        return self._closed

    async def new_page(self) -> Page:
        if self._closed:
            raise RuntimeError("BrowserSession is closed")
        page = await self._context.new_page()
        page.set_default_navigation_timeout(self._manager.navigation_timeout)
        page.set_default_timeout(self._manager.action_timeout)
        self._pages.append(page)
        return page

    async def close_page(self, page: Page) -> None:
        try:
            await page.close()
        except PlaywrightError as e:
            logger.warning(f"Error closing page: {e}")
        if page in self._pages:
            self._pages.remove(page)

    async def is_healthy(self) -> bool:
        """Probe the egress: browser alive and the check URL returns an IP."""
        if self._closed or not self._browser.is_connected():
            return False
        page = None
        try:
            page = await self._context.new_page()
            response = await page.goto(
                self._manager.check_url, wait_until="domcontentloaded", timeout=15000
            )
            body = await page.content()
            return bool(response and response.ok and "ip" in body and "error" not in body.lower())
        except PlaywrightError as e:
            logger.warning(f"Proxy check failed: {e}")
            return False
        finally:
            if page is not None:
                try:
                    await page.close()
                except PlaywrightError:
                    pass

    async def close(self) -> None:
        """Close pages, context and browser. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        for page in list(self._pages):
            await self.close_page(page)
        for closable, name in ((self._context, "context"), (self._browser, "browser")):
            try:
                await closable.close()
            except PlaywrightError as e:
                logger.warning(f"Error closing browser {name}: {e}")
        self._manager._release(self)
        logger.info("Browser session closed")


class BrowserSessionManager:
    """Launches isolated, stealth-patched Chromium sessions behind proxies.

    Each session gets its own browser process and context so that nothing
    (cookies, fingerprint, proxy) leaks between jobs.
    """

    _CHROMIUM_ARGS = [
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-blink-features=AutomationControlled",
        "--disable-infobars",
        "--disable-accelerated-2d-canvas",
        "--disable-gpu",
        "--window-size=1920,1080",
        "--no-first-run",
        "--no-default-browser-check",
        "--disable-features=IsolateOrigins,site-per-process",
    ]

    def __init__(
        self,
        headless: bool = True,
        block_resources: bool = True,
        navigation_timeout: int = 60000,
        action_timeout: int = 30000,
        check_url: str = "https://api.ipify.org?format=json",
        solver=None,
        playwright=None,
    ):
        self.headless = headless
        self.block_resources = block_resources
        self.navigation_timeout = navigation_timeout
        self.action_timeout = action_timeout
        self.check_url = check_url
        self.solver = solver
        self._playwright = playwright
        self._owns_playwright = playwright is None
        self._sessions: list[BrowserSession] = []
        self._lock: asyncio.Lock | None = None

    @classmethod
    def from_settings(cls, settings, solver=None) -> "BrowserSessionManager":
        return cls(
            headless=settings.BROWSER_HEADLESS,
            block_resources=settings.BROWSER_BLOCK_RESOURCES,
            navigation_timeout=settings.BROWSER_NAVIGATION_TIMEOUT,
            action_timeout=settings.BROWSER_ACTION_TIMEOUT,
            check_url=settings.PROXY_CHECK_URL,
            solver=solver,
        )

    @property
    def sessions(self) -> list[BrowserSession]:
        return list(self._sessions)

    async def _ensure_playwright(self):
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
                self._owns_playwright = True
        return self._playwright

    async def launch(
        self, proxy: Proxy | None = None, options: SessionOptions | None = None
    ) -> BrowserSession:
        """Start a browser bound to ``proxy`` and return its session."""
        options = options or SessionOptions()
        playwright = await self._ensure_playwright()

        launch_kwargs = {"headless": self.headless, "args": list(self._CHROMIUM_ARGS)}
        if proxy is not None:
            launch_kwargs["proxy"] = proxy.to_playwright()
            logger.info(f"Launching browser with proxy {proxy.host}:{proxy.port}")
        else:
            logger.info("Launching browser without proxy")

        browser = await playwright.chromium.launch(**launch_kwargs)
        try:
            ua = options.user_agent or random.choice(CHROME_USER_AGENTS)
            context = await browser.new_context(
                user_agent=ua,
                viewport=options.viewport or random.choice(VIEWPORTS),
                locale=options.locale,
                timezone_id=options.timezone_id or random.choice(TIMEZONES),
                ignore_https_errors=True,
                java_script_enabled=True,
                has_touch=False,
                is_mobile=False,
                color_scheme="light",
                extra_http_headers={
                    "Accept-Language": "en-US,en;q=0.9",
                    "Upgrade-Insecure-Requests": "1",
                    **options.extra_headers,
                },
            )

            block = self.block_resources if options.block_resources is None else options.block_resources
            await _setup_route_blocking(context, block_resources=block)

            webgl_vendor, webgl_renderer = random.choice(WEBGL_RENDERERS)
            await context.add_init_script(
                build_stealth_script(
                    webgl_vendor,
                    webgl_renderer,
                    hw_concurrency=random.choice([4, 8, 12, 16]),
                    device_mem=random.choice([4, 8, 16]),
                )
            )
        except BaseException:
            await browser.close()
            raise

        session = BrowserSession(self, browser, context, proxy, ua)
        self._sessions.append(session)
        active_browser_sessions.inc()
        return session

    def _release(self, session: BrowserSession) -> None:
        if session in self._sessions:
            self._sessions.remove(session)
            active_browser_sessions.dec()

    async def close(self, session: BrowserSession) -> None:
        await session.close()

    async def close_all(self) -> None:
        """Close every live session and stop Playwright if we started it."""
        for session in list(self._sessions):
            await session.close()
        if self._playwright is not None and self._owns_playwright:
            await self._playwright.stop()
            self._playwright = None
        logger.info("All browser sessions closed")

    # -----------------------------------------------------------------------
    # Page helpers
    # -----------------------------------------------------------------------

    async def navigate_with_retry(
        self,
        page: Page,
        url: str,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        wait_until: str = "networkidle",
    ) -> bool:
        """Page-level navigation retry using this manager's navigation timeout."""
        return await navigate_with_retry(
            page, url, max_retries, retry_delay, wait_until, timeout=self.navigation_timeout
        )

    random_delay = staticmethod(random_delay)

    async def detect_challenge(self, page: Page) -> bool:
        """True when the page shows a CAPTCHA / bot challenge."""
        try:
            for selector in CHALLENGE_SELECTORS:
                if await page.query_selector(selector):
                    return True
            html = (await page.content()).lower()
        except PlaywrightError as e:
            logger.debug(f"Challenge detection failed: {e}")
            return False
        return any(marker in html for marker in CHALLENGE_TEXT_MARKERS)

    async def solve_challenge(self, page: Page) -> bool:
        """Hand the page to the configured solver. No solver means no solve."""
        if self.solver is None:
            logger.warning("Challenge detected but no challenge solver is configured")
            return False
        try:
            solved = await self.solver.solve(page)
        except Exception as e:
            logger.error(f"Challenge solver failed: {e}")
            return False
        if solved:
            logger.info("Challenge solved")
        else:
            logger.warning("Challenge solver could not solve the challenge")
        return solved
