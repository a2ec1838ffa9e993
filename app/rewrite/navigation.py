"""Navigation interception script injected into every rewritten HTML page.

The script runs inside the shell's frame and turns link clicks and form
submissions into a single message to the shell:

    window.parent.postMessage({type: "navigate", url: <absolute upstream URL>}, "*")

The shell then drives the navigation (address bar, history, probe request).
Routed URLs (``<endpoint>?url=…``) are decoded back to the upstream URL before
they are posted. ``#…`` and ``javascript:`` links are left to the page.

The parent reference is captured before ``window.top`` / ``window.parent`` are
shadowed with ``window.self``, so scripts on the page cannot reach the shell
while the interceptor still can.
"""

from __future__ import annotations

import json

NAV_SCRIPT_MARKER = "data-periscope-nav"

NAVIGATE_MESSAGE_TYPE = "navigate"

_ENDPOINT_PLACEHOLDER = "__PERISCOPE_ENDPOINT__"
_MESSAGE_TYPE_PLACEHOLDER = "__PERISCOPE_MESSAGE_TYPE__"

_SCRIPT_TEMPLATE = """
(function () {
  if (window.__periscopeNav) { return; }
  window.__periscopeNav = true;

  var ENDPOINT = __PERISCOPE_ENDPOINT__;
  var shell = window.parent;

  function resolve(raw) {
    var u, ep;
    try { u = new URL(raw, document.baseURI); } catch (e) { return null; }
    try { ep = new URL(ENDPOINT, window.location.href); } catch (e) { ep = null; }
    if (ep && u.pathname === ep.pathname && u.searchParams.has('url')) {
      return u.searchParams.get('url');
    }
    return u.href;
  }

  function navigate(url) {
    if (!url || shell === window) { return false; }
    shell.postMessage({type: __PERISCOPE_MESSAGE_TYPE__, url: url}, '*');
    return true;
  }

  document.addEventListener('click', function (event) {
    var node = event.target;
    var link = node && node.closest ? node.closest('a') : null;
    if (!link) { return; }
    var href = link.getAttribute('href');
    if (!href || href.charAt(0) === '#' || /^\\s*javascript:/i.test(href)) { return; }
    if (navigate(resolve(href))) { event.preventDefault(); }
  }, true);

  document.addEventListener('submit', function (event) {
    var form = event.target;
    if (!form || form.tagName !== 'FORM') { return; }
    var target = resolve(form.getAttribute('action') || window.location.href);
    if (!target) { return; }
    var method = (form.getAttribute('method') || 'get').toLowerCase();
    if (method === 'get') {
      var u = new URL(target);
      u.search = new URLSearchParams(new FormData(form)).toString();
      target = u.href;
    }
    if (navigate(target)) { event.preventDefault(); }
  }, true);

  try {
    Object.defineProperty(window, 'top', { get: function () { return window.self; } });
    Object.defineProperty(window, 'parent', { get: function () { return window.self; } });
  } catch (e) {}
})();
"""


def build_navigation_script(proxy_endpoint: str) -> str:
    """Return the interception script body for ``proxy_endpoint``.

    The endpoint is embedded as a JSON string literal with ``<`` escaped so it
    can never close the surrounding ``<script>`` element.
    """
    literal = json.dumps(proxy_endpoint).replace("<", "\\u003c")
    script = _SCRIPT_TEMPLATE.replace(_MESSAGE_TYPE_PLACEHOLDER, json.dumps(NAVIGATE_MESSAGE_TYPE))
    return script.replace(_ENDPOINT_PLACEHOLDER, literal)
