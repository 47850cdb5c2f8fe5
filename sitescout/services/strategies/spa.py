"""Single-page-application scraping: wait for hydration, then walk client routes."""

import logging
import time

from playwright.async_api import Page, TimeoutError as PlaywrightTimeoutError

from sitescout.config import settings
from sitescout.core.metrics import scrape_duration_seconds
from sitescout.schemas.scrape import ScrapeRequest, ScrapingResult
from sitescout.services.browser import BrowserPool
from sitescout.services.stealth import StealthLayer, simulate_human
from sitescout.services.strategies.base import (
    SPA_URL_PATTERNS,
    auto_scroll,
    build_result,
    capture_outputs,
    failed_result,
    measure_page,
    navigate,
    redirect_chain_length,
)
from sitescout.services.strategies.dynamic import request_fingerprint

logger = logging.getLogger(__name__)

MAX_DISCOVERED_ROUTES = 20
MAX_EXPLORED_ROUTES = 5
ROUTE_SETTLE_MS = 1000

APP_READY_SELECTORS = [
    '[data-app-ready="true"]',
    '[data-loaded="true"]',
    ".app-initialized",
    "#app.hydrated",
    "#root[data-hydrated]",
]

# Records client-side navigations before any app code runs
HISTORY_TRACKER_JS = """
(() => {
    if (window.__sitescoutRoutes) return;
    window.__sitescoutRoutes = [];
    const record = (type, url) => {
        try { window.__sitescoutRoutes.push({ type, url: String(url || location.href), timestamp: Date.now() }); } catch (e) {}
    };
    const push = history.pushState;
    const replace = history.replaceState;
    history.pushState = function (state, title, url) { record('push', url); return push.apply(this, arguments); };
    history.replaceState = function (state, title, url) { record('replace', url); return replace.apply(this, arguments); };
    window.addEventListener('popstate', () => record('pop', location.href));
})();
"""

FRAMEWORK_READY_JS = """
() => !!(
    (window.React && window.React.version) ||
    (window.Vue && window.Vue.version) ||
    window.angular || window.ng ||
    document.querySelector('[data-reactroot], [data-v-app], [ng-version], #__next > *')
)
"""

SPA_FEATURES_JS = """
() => {
    const w = window;
    const isReact = !!(w.React || w.__REACT_DEVTOOLS_GLOBAL_HOOK__ || document.querySelector('[data-reactroot]') ||
        (document.querySelector('#root, #__next') || {})._reactRootContainer);
    const isVue = !!(w.Vue || w.__VUE__ || document.querySelector('[data-v-app]'));
    const isAngular = !!(w.ng || document.querySelector('[ng-app], [ng-version]'));
    const body = document.body;
    const children = body ? Array.from(body.children).filter(el => !['SCRIPT', 'NOSCRIPT', 'STYLE', 'LINK'].includes(el.tagName)) : [];
    return {
        hasFramework: isReact || isVue || isAngular,
        hasRouter: !!(w.ReactRouter || w.VueRouter || w.__VUE_ROUTER__ || document.querySelector('[data-server-rendered], [ui-router], [ng-view], router-outlet')),
        hasVirtualDom: !!(document.querySelector('[data-reactid]') || w.__REACT_DEVTOOLS_GLOBAL_HOOK__ || w.__VUE_DEVTOOLS_GLOBAL_HOOK__ || w.__VUE__),
        usesHistoryApi: !!(w.history && w.history.pushState && (document.querySelector('[data-route]') ||
            (Array.isArray(w.__sitescoutRoutes) && w.__sitescoutRoutes.length > 0))),
        hasSpaElements: !!document.querySelector('#app, #root, [data-app], .app-container'),
        hasSingleRoot: children.length === 1,
    };
}
"""

SPA_INFO_JS = """
() => {
    const w = window;
    const info = { framework: null, version: null, build_tool: null, state_management: null };
    if (w.__NEXT_DATA__) { info.framework = 'nextjs'; info.version = (w.next && w.next.version) || null; }
    else if (w.__NUXT__ || w.$nuxt) info.framework = 'nuxt';
    else if (w.React || document.querySelector('[data-reactroot]')) { info.framework = 'react'; info.version = (w.React && w.React.version) || null; }
    else if (w.Vue || w.__VUE__ || document.querySelector('[data-v-app]')) { info.framework = 'vue'; info.version = (w.Vue && w.Vue.version) || null; }
    else if (w.ng || document.querySelector('[ng-version]')) {
        info.framework = 'angular';
        const el = document.querySelector('[ng-version]');
        info.version = el ? el.getAttribute('ng-version') : null;
    }
    if (w.webpackJsonp || Object.keys(w).some(k => k.startsWith('webpackChunk')) || document.querySelector('script[src*="webpack"]')) info.build_tool = 'webpack';
    else if (document.querySelector('script[type="module"][src*="vite"], script[src*="/@vite/"]')) info.build_tool = 'vite';
    else if (w.parcelRequire || document.querySelector('script[src*="parcel"]')) info.build_tool = 'parcel';
    if (w.__REDUX_DEVTOOLS_EXTENSION__ || w.__PRELOADED_STATE__) info.state_management = 'redux';
    else if (w.__MOBX_DEVTOOLS_GLOBAL_HOOK__) info.state_management = 'mobx';
    else if (w.__pinia) info.state_management = 'pinia';
    else if (w.__VUE_DEVTOOLS_GLOBAL_HOOK__ || (w.$nuxt && w.$nuxt.$store)) info.state_management = 'vuex';
    else if (w.__APOLLO_STATE__) info.state_management = 'apollo';
    return info;
}
"""

DISCOVER_ROUTES_JS = """
(maxRoutes) => {
    const w = window;
    const routes = [];
    const add = (path) => { if (typeof path === 'string' && path && !path.includes(':') && !routes.includes(path)) routes.push(path); };
    try {
        if (w.__REACT_ROUTER__ && w.__REACT_ROUTER__.routes) Object.keys(w.__REACT_ROUTER__.routes).forEach(add);
        const vueRouter = w.$router || w.__VUE_ROUTER__ || (w.$nuxt && w.$nuxt.$router);
        if (vueRouter) {
            if (typeof vueRouter.getRoutes === 'function') vueRouter.getRoutes().forEach(r => add(r.path));
            else if (vueRouter.options && vueRouter.options.routes) vueRouter.options.routes.forEach(r => add(r.path));
        }
        if (w.ng && w.ng.router && Array.isArray(w.ng.router.config)) w.ng.router.config.forEach(r => add('/' + (r.path || '')));
    } catch (e) {}
    if (routes.length === 0) {
        document.querySelectorAll('a[href]').forEach(a => {
            const href = a.getAttribute('href');
            if (href && (href.startsWith('/') || href.startsWith('#')) && !href.startsWith('//') && !href.includes('http') && href !== '#') add(href);
        });
    }
    return routes.slice(0, maxRoutes);
}
"""

EXPLORE_ROUTE_JS = """
async ({ route, settle }) => {
    if (route.startsWith('#')) {
        location.hash = route.slice(1);
    } else {
        history.pushState({}, '', route);
        window.dispatchEvent(new PopStateEvent('popstate', { state: {} }));
    }
    await new Promise(resolve => setTimeout(resolve, settle));
    const length = document.body ? document.body.innerText.length : 0;
    return { url: location.pathname + location.hash, title: document.title, content_length: length, has_content: length > 100 };
}
"""

ROOT_TEXT_JS = """
(maxLength) => {
    const root = document.querySelector('#root, #__next, [data-reactroot], #app, [data-server-rendered="true"], app-root, [ng-app]')
        || document.querySelector('main') || document.body;
    if (!root) return '';
    const clone = root.cloneNode(true);
    const strip = ['script', 'style', 'noscript', 'nav', 'header', 'footer', '.navigation', '.sidebar', '[data-testid]', '[data-test]'];
    strip.forEach(sel => clone.querySelectorAll(sel).forEach(el => el.remove()));
    return (clone.textContent || '').replace(/\\s+/g, ' ').trim().slice(0, maxLength);
}
"""


def score_spa(features: dict) -> float:
    score = 0.2
    if features.get("hasFramework"):
        score += 0.4
    if features.get("hasRouter"):
        score += 0.2
    if features.get("hasVirtualDom"):
        score += 0.15
    if features.get("usesHistoryApi"):
        score += 0.1
    if features.get("hasSpaElements"):
        score += 0.1
    if features.get("hasSingleRoot"):
        score += 0.05
    return max(0.0, min(score, 1.0))


class SPAStrategy:
    name = "spa"
    requires_browser = True

    def __init__(self, pool: BrowserPool, stealth: StealthLayer | None = None):
        self.pool = pool
        self.stealth = stealth

    async def detect_confidence(self, url: str, page: Page | None = None) -> float:
        if page is None:
            return 0.6 if any(p in url for p in SPA_URL_PATTERNS) else 0.2
        try:
            features = await page.evaluate(SPA_FEATURES_JS)
        except Exception as e:
            logger.debug(f"SPA detection failed for {url}: {e}")
            return 0.3
        score = score_spa(features)
        logger.debug(f"SPA confidence for {url}: {score:.2f}")
        return score

    async def _wait_for_app(self, page: Page) -> None:
        for selector in APP_READY_SELECTORS:
            try:
                await page.wait_for_selector(selector, timeout=5000)
                return
            except PlaywrightTimeoutError:
                continue
        try:
            await page.wait_for_function(FRAMEWORK_READY_JS, timeout=10000)
        except PlaywrightTimeoutError:
            logger.debug(f"No framework readiness signal on {page.url}")

    async def _explore_routes(self, page: Page, routes: list[str]) -> list[dict]:
        explored = []
        for route in routes[:MAX_EXPLORED_ROUTES]:
            try:
                explored.append(
                    await page.evaluate(
                        EXPLORE_ROUTE_JS, {"route": route, "settle": ROUTE_SETTLE_MS}
                    )
                )
            except Exception as e:
                logger.debug(f"Failed to explore route {route}: {e}")
        return explored

    async def execute(self, url: str, request: ScrapeRequest) -> ScrapingResult:
        started = time.monotonic()
        html: str | None = None
        status: int | None = None
        timeout = max(request.timeout, settings.SPA_TIMEOUT)

        try:
            async with self.pool.new_page(
                stealth=self.stealth if request.stealth.enabled else None,
                stealth_config=request.stealth,
                fingerprint=request_fingerprint(self.stealth, request),
                block_resources=request.block_resources,
            ) as page:
                await page.add_init_script(HISTORY_TRACKER_JS)
                response = await navigate(
                    page, url, request, wait_until="networkidle", timeout=timeout
                )
                status = response.status if response is not None else None
                redirects = redirect_chain_length(response)

                await self._wait_for_app(page)
                if request.scroll.enabled:
                    await auto_scroll(page, request.scroll)
                if request.stealth.simulate_human:
                    await simulate_human(page)

                html = await page.content()
                if status is not None and status >= 400:
                    return failed_result(
                        url,
                        self.name,
                        f"HTTP {status}",
                        status_code=status,
                        html=html,
                        final_url=page.url,
                        redirect_count=redirects,
                        started=started,
                    )

                # Entry-page content is captured before route exploration moves the app
                text = await page.evaluate(ROOT_TEXT_JS, request.max_text_length)
                final_url = page.url
                screenshot, pdf = await capture_outputs(page, request)
                spa_info = await page.evaluate(SPA_INFO_JS)
                routes = await page.evaluate(DISCOVER_ROUTES_JS, MAX_DISCOVERED_ROUTES)
                explored = await self._explore_routes(page, routes)
                route_changes = await page.evaluate("() => window.__sitescoutRoutes || []")
                metrics = await measure_page(page, started)
        except Exception as e:
            logger.warning(f"SPA scrape failed for {url}: {e}")
            return failed_result(
                url,
                self.name,
                e,
                status_code=getattr(e, "status_code", status),
                html=html,
                started=started,
            )
        finally:
            scrape_duration_seconds.labels(strategy=self.name).observe(
                time.monotonic() - started
            )

        try:
            spa_info.update(
                routes=routes,
                explored_routes=explored,
                route_changes=len(route_changes),
            )
            return build_result(
                url=url,
                strategy=self.name,
                html=html,
                request=request,
                final_url=final_url,
                redirect_count=redirects,
                status_code=status,
                text=text or None,
                metrics=metrics,
                extras={"spa_info": spa_info},
                screenshot=screenshot,
                pdf=pdf,
            )
        except Exception as e:
            logger.warning(f"SPA extraction failed for {url}: {e}")
            return failed_result(
                url,
                self.name,
                e,
                status_code=status,
                final_url=final_url,
                redirect_count=redirects,
                started=started,
            )
