"""Periscope content rewriter package.

Makes fetched pages usable inside the browser shell's frame by routing every
subresource and navigation back through the proxy endpoint:

  - urls.py        — route_url() / rewrite_srcset(): the single URL routing rule
  - css.py         — url() and @import rewriting for stylesheets and style attributes
  - frames.py      — frame-busting neutralisation for inline scripts and handlers
  - navigation.py  — the injected click/submit interception script
  - html.py        — DOM rewrite (BeautifulSoup, html.parser)
  - dispatch.py    — content-type classification and the rewrite() entry point

Every transformation is idempotent: rewriting already-rewritten output
changes nothing.
"""
