"""Raw JavaScript payloads evaluated inside challenge pages.

Kept apart from the Python logic so the scripts can be read (and
diffed) as JavaScript.  All scripts that touch page globals must run in
the page's main world; Camoufox evaluates in an isolated world unless
the source carries the ``mw:`` prefix, which :func:`main_world` adds.
"""

CONSOLE_TAG = "[fetchgate]"

CAPTURE_GLOBAL = "__fgCaptured"
CALLBACK_GLOBAL = "__fgCallback"


def main_world(script: str) -> str:
    """Mark *script* for main-world evaluation under Camoufox."""
    return f"mw:{script}"


# Installed with ``add_init_script`` so it runs before any page script
# on every new document.  Polls for ``window.turnstile`` and wraps its
# ``render`` so the page's own call hands us the hidden parameters.
INTERCEPT_SCRIPT = """
(() => {
    window.__fgCaptured = window.__fgCaptured || null;
    window.__fgCallback = window.__fgCallback || null;

    const wrap = () => {
        const ts = window.turnstile;
        if (!ts || typeof ts.render !== 'function') return false;
        if (ts.__fgWrapped) return true;
        const originalRender = ts.render;
        ts.render = function (container, params) {
            params = params || {};
            window.__fgCaptured = {
                sitekey: params.sitekey || null,
                action: params.action || null,
                cData: params.cData || null,
                chlPageData: params.chlPageData || null
            };
            window.__fgCallback = typeof params.callback === 'function' ? params.callback : null;
            console.log('[fetchgate] turnstile.render intercepted');
            return originalRender.apply(this, arguments);
        };
        ts.__fgWrapped = true;
        console.log('[fetchgate] render entry point wrapped');
        return true;
    };

    if (wrap()) return;
    const poll = setInterval(() => {
        if (wrap()) clearInterval(poll);
    }, 10);
    setTimeout(() => {
        clearInterval(poll);
        if (!window.turnstile) console.log('[fetchgate] widget global never appeared');
    }, 30000);
})();
"""

RESET_CAPTURED_SCRIPT = """
() => {
    window.__fgCaptured = null;
    window.__fgCallback = null;
}
"""

READ_CAPTURED_SCRIPT = """
() => {
    const p = window.__fgCaptured;
    if (!p || !p.sitekey) return null;
    return {
        sitekey: p.sitekey,
        action: p.action || null,
        cData: p.cData || null,
        chlPageData: p.chlPageData || null,
        hasCallback: typeof window.__fgCallback === 'function'
    };
}
"""

# Each extractor returns a sitekey string or null.  The order in which
# they are tried lives in ``solvers.detector``.
MARKED_ELEMENT_SCRIPT = """
() => {
    const selectors = [
        '[data-callback="ddgCaptchaCallback"][data-sitekey]',
        '.cf-turnstile[data-sitekey]',
        '.h-captcha[data-sitekey]',
        '[data-sitekey]'
    ];
    for (const sel of selectors) {
        const el = document.querySelector(sel);
        const key = el && el.getAttribute('data-sitekey');
        if (key) return key;
    }
    return null;
}
"""

CUSTOM_ELEMENT_SCRIPT = """
() => {
    const els = document.querySelectorAll('cf-turnstile, h-captcha, ddg-captcha');
    for (const el of els) {
        const key = el.getAttribute('sitekey') || el.getAttribute('site-key') || el.getAttribute('data-sitekey');
        if (key) return key;
    }
    return null;
}
"""

IFRAME_SRC_SCRIPT = """
() => {
    const frames = document.querySelectorAll('iframe[src]');
    for (const frame of frames) {
        const src = frame.getAttribute('src') || '';
        if (!(src.includes('challenges.cloudflare.com') || src.includes('hcaptcha.com'))) continue;
        const match = src.match(/[?&#](?:sitekey|k)=([^&#]+)/);
        if (match) return decodeURIComponent(match[1]);
    }
    return null;
}
"""

INLINE_SCRIPTS_SCRIPT = """
() => Array.from(document.querySelectorAll('script:not([src])'))
    .map(s => s.textContent || '')
    .filter(t => t.length > 0)
"""

GLOBAL_OBJECT_SCRIPT = """
() => {
    try {
        if (window.turnstile && window.turnstile._render_parameters && window.turnstile._render_parameters.sitekey) {
            return window.turnstile._render_parameters.sitekey;
        }
    } catch (e) {}
    const cfg = window.___cf_turnstile_cfg;
    if (cfg) {
        for (const v of Object.values(cfg)) {
            if (v && v.sitekey) return v.sitekey;
        }
    }
    const names = ['cf_sitekey', 'captcha_sitekey', 'hcaptcha_sitekey', 'H_SITE_KEY'];
    for (const n of names) {
        if (typeof window[n] === 'string' && window[n].length > 0) return window[n];
    }
    return null;
}
"""

INJECT_TOKEN_SCRIPT = """
([token, userAgent]) => {
    const result = { submitted: false, fieldFound: false, callbackInvoked: false };

    const names = ['cf-turnstile-response', 'h-captcha-response', 'g-recaptcha-response'];
    for (const name of names) {
        const fields = document.querySelectorAll(`[name="${name}"]`);
        fields.forEach(el => {
            el.value = token;
            el.dispatchEvent(new Event('input', { bubbles: true }));
            el.dispatchEvent(new Event('change', { bubbles: true }));
            result.fieldFound = true;
        });
    }

    const callbacks = [window.__fgCallback, window.ddgCaptchaCallback];
    for (const cb of callbacks) {
        if (typeof cb !== 'function') continue;
        try {
            cb(token);
            result.callbackInvoked = true;
        } catch (e) {
            console.log('[fetchgate] callback error: ' + e);
        }
    }

    if (userAgent) {
        try {
            Object.defineProperty(navigator, 'userAgent', {
                get: () => userAgent,
                configurable: true
            });
        } catch (e) {
            console.log('[fetchgate] user agent override failed: ' + e);
        }
    }

    let form = null;
    const field = document.querySelector('[name="cf-turnstile-response"], [name="h-captcha-response"]');
    if (field && field.closest) form = field.closest('form');
    if (!form) form = document.querySelector('form');
    if (form) {
        try {
            form.submit();
            result.submitted = true;
        } catch (e) {
            console.log('[fetchgate] form submit error: ' + e);
        }
    }
    return result;
}
"""

CLICK_VERIFY_BUTTON_SCRIPT = """
() => {
    const RE = /(verify|continue|i am not a robot|i'm not a robot|check your browser|proceed|allow)/i;
    const visible = el => {
        const r = el.getBoundingClientRect();
        return r.width > 0 && r.height > 0;
    };
    const candidates = document.querySelectorAll('button, input[type="submit"], a');
    for (const el of candidates) {
        const text = ((el.innerText || el.value || '') + '').trim();
        if (!text || !RE.test(text) || !visible(el)) continue;
        try {
            el.click();
            return text;
        } catch (e) {}
    }
    return null;
}
"""

DOCUMENT_COOKIE_SCRIPT = "() => document.cookie"
