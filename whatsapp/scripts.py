"""Page-side scripts injected into WhatsApp Web.

Selectors follow the current WhatsApp Web markup and may need adjusting after
WhatsApp updates its UI.
"""

WHATSAPP_URL = "https://web.whatsapp.com/"

BINDING_NAME = "relayOnMessage"

CHAT_LIST_SELECTOR = "#pane-side, div[aria-label='Chat list'], div[aria-label='Lista de conversas']"
QR_CANVAS_SELECTOR = "div[data-ref] canvas, canvas[aria-label*='Scan'], canvas[aria-label*='Escaneie']"
COMPOSER_SELECTOR = "footer div[contenteditable='true'][role='textbox']"

# Installed on every navigation. Messages rendered while disarmed are only
# remembered as seen, so opening a chat never replays its history.
OBSERVER_JS = """
(() => {
  if (window.__relay_installed) return;
  window.__relay_installed = true;
  window.__relay_seen = new Set();
  window.__relay_armed = false;
  const SEEN_LIMIT = 5000;

  function remember(id) {
    window.__relay_seen.add(id);
    if (window.__relay_seen.size > SEEN_LIMIT) {
      window.__relay_seen.delete(window.__relay_seen.values().next().value);
    }
  }

  function chatTitle() {
    const header = document.querySelector('#main header');
    if (!header) return '';
    const title = header.querySelector('span[title]') || header.querySelector('span[dir="auto"]');
    return title ? (title.getAttribute('title') || title.textContent || '').trim() : '';
  }

  function parse(el) {
    const id = el.getAttribute('data-id') || '';
    if (!id) return null;
    const textEl = el.querySelector('.selectable-text.copyable-text') || el.querySelector('span.selectable-text');
    const cls = el.className || '';
    const inner = el.querySelector('.message-in, .message-out');
    const innerCls = inner ? (inner.className || '') : '';
    return {
      msgId: id,
      text: textEl ? (textEl.innerText || textEl.textContent || '').trim() : '',
      isIncoming: /message-in/.test(cls) || /message-in/.test(innerCls),
      isOutgoing: /message-out/.test(cls) || /message-out/.test(innerCls) || id.startsWith('true_'),
      chatTitle: chatTitle(),
    };
  }

  function rendered() {
    const main = document.querySelector('#main');
    if (!main) return [];
    return Array.from(main.querySelectorAll('[data-id]')).map(parse).filter(Boolean);
  }

  function emit(msg) {
    if (!msg || window.__relay_seen.has(msg.msgId)) return;
    remember(msg.msgId);
    try {
      window.relayOnMessage(msg);
    } catch (e) {
      console.log('relayOnMessage error', e);
    }
  }

  window.__relay_disarm = () => { window.__relay_armed = false; };

  window.__relay_openChat = (unread) => {
    const msgs = rendered();
    const incoming = msgs.filter((m) => m.isIncoming);
    const fresh = new Set(unread > 0 ? incoming.slice(-unread).map((m) => m.msgId) : []);
    msgs.forEach((m) => { if (!fresh.has(m.msgId)) remember(m.msgId); });
    msgs.forEach((m) => { if (fresh.has(m.msgId)) emit(m); });
    window.__relay_armed = true;
  };

  function install() {
    if (!document.body) {
      setTimeout(install, 500);
      return;
    }
    const obs = new MutationObserver((mutations) => {
      for (const m of mutations) {
        for (const n of m.addedNodes) {
          if (!(n instanceof HTMLElement)) continue;
          const items = n.matches('[data-id]') ? [n] : Array.from(n.querySelectorAll('[data-id]'));
          items.forEach((it) => {
            const msg = parse(it);
            if (!msg) return;
            if (window.__relay_armed) emit(msg);
            else remember(msg.msgId);
          });
        }
      }
    });
    obs.observe(document.body, { childList: true, subtree: true });
  }

  install();
})();
"""

UNREAD_CHATS_JS = """
() => {
  const pane = document.querySelector('#pane-side');
  if (!pane) return [];
  const rows = Array.from(pane.querySelectorAll('[role="listitem"], [role="row"]'));
  const out = [];
  for (const row of rows) {
    const badge = row.querySelector('span[aria-label*="unread" i], span[aria-label*="não lida" i]');
    if (!badge) continue;
    const title = row.querySelector('span[title]');
    if (!title) continue;
    const count = parseInt((badge.textContent || '').trim(), 10);
    out.push({ title: title.getAttribute('title'), unread: Number.isFinite(count) ? count : 1 });
  }
  return out;
}
"""

QR_DATA_URL_JS = "(c) => c.toDataURL('image/png')"
