"""HTML for the client token bridge (``GET /auth/bridge``)."""

import json
from typing import Any

from linkbio.config import settings

TOKEN_STORAGE_KEY = "linkbio.token"
USERNAME_STORAGE_KEY = "linkbio.username"

_PAGE = """<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="referrer" content="no-referrer">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Signing you in</title>
<style nonce="__NONCE__">
  body { font-family: system-ui, sans-serif; display: grid; place-items: center; min-height: 100vh; margin: 0; }
  .box { max-width: 26rem; text-align: center; }
  #error { border: 1px solid #d33; border-radius: 8px; padding: 1rem; }
</style>
</head>
<body>
<div class="box">
  <p id="status">Signing you in&hellip;</p>
  <div id="error" role="alert" hidden>
    <p id="reason"></p>
    <p><a href="__LANDING__">Back to the home page</a></p>
    <button type="button" id="dismiss">Dismiss</button>
  </div>
</div>
<script type="application/json" id="bridge-config">__CONFIG__</script>
<script nonce="__NONCE__">
(function () {
  var cfg = JSON.parse(document.getElementById("bridge-config").textContent);
  var params = new URLSearchParams(window.location.search);
  var token = params.get("token");
  var username = params.get("username");
  // Drop the token from the address bar and history before any request
  window.history.replaceState(null, "", window.location.pathname);

  var statusEl = document.getElementById("status");
  var errorEl = document.getElementById("error");

  function fail(message) {
    try { window.localStorage.removeItem(cfg.tokenKey); } catch (e) { /* storage unavailable */ }
    statusEl.hidden = true;
    document.getElementById("reason").textContent = message;
    errorEl.hidden = false;
  }

  document.getElementById("dismiss").addEventListener("click", function () {
    errorEl.hidden = true;
    window.location.replace(cfg.landingPath);
  });

  if (!token) { fail("Sign-in did not return a credential."); return; }

  try {
    window.localStorage.setItem(cfg.tokenKey, token);
    if (username) { window.localStorage.setItem(cfg.usernameKey, username); }
  } catch (e) {
    fail("This browser blocked storing your sign-in.");
    return;
  }

  var controller = new AbortController();
  var timer = window.setTimeout(function () { controller.abort(); }, cfg.timeoutMs);
  window.addEventListener("pagehide", function () { controller.abort(); });

  fetch(cfg.identityPath, {
    headers: { "Authorization": "Bearer " + token, "Accept": "application/json" },
    credentials: "same-origin",
    cache: "no-store",
    signal: controller.signal
  }).then(function (response) {
    window.clearTimeout(timer);
    if (!response.ok) { throw new Error("identity check returned " + response.status); }
    return response.json();
  }).then(function (identity) {
    try { window.localStorage.setItem(cfg.usernameKey, identity.username); } catch (e) { /* non-fatal */ }
    window.location.replace(cfg.appPath);
  }).catch(function (err) {
    window.clearTimeout(timer);
    fail(err && err.name === "AbortError"
      ? "Verifying your sign-in took too long."
      : "We could not verify your sign-in.");
  });
})();
</script>
</body>
</html>
"""


def _script_safe_json(data: dict[str, Any]) -> str:
    # "</script>" inside a JSON island would close the element
    return json.dumps(data).replace("<", "\\u003c").replace(">", "\\u003e").replace("&", "\\u0026")


def bridge_csp(nonce: str) -> str:
    return (
        "default-src 'none'; "
        f"script-src 'nonce-{nonce}'; "
        f"style-src 'nonce-{nonce}'; "
        "connect-src 'self'; "
        "base-uri 'none'; "
        "form-action 'none'; "
        "frame-ancestors 'none'"
    )


def render_bridge_page(nonce: str, identity_path: str, landing_path: str = "/") -> str:
    """
    Render the bridge page.

    Nothing from the query string is rendered server side; the script reads
    the token and username from ``location`` itself.
    """
    config = {
        "tokenKey": TOKEN_STORAGE_KEY,
        "usernameKey": USERNAME_STORAGE_KEY,
        "identityPath": identity_path,
        "appPath": settings.POST_LOGIN_PATH,
        "landingPath": landing_path,
        "timeoutMs": int(settings.BRIDGE_TIMEOUT_SECONDS * 1000),
    }
    return (
        _PAGE.replace("__NONCE__", nonce)
        .replace("__LANDING__", landing_path)
        .replace("__CONFIG__", _script_safe_json(config))
    )
