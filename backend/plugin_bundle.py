"""
Plugin Bundle - generated design-tool plugin that executes bridge commands

The plugin polls the bridge, runs each command against the open file and
reports back. Its polling contract matches design_executor.DesignExecutor:
health probe before polling, sequential polls, a local in-flight set that is
cleared 5s after reporting, silent retry while the bridge is unreachable.
"""

import json
import logging
from pathlib import Path
from typing import Dict, Union

logger = logging.getLogger(__name__)

PLUGIN_NAME = "Design Command Bridge"
PLUGIN_ID = "design-command-bridge"
POLL_INTERVAL_MS = 1000
FORGET_DELAY_MS = 5000


PLUGIN_CODE_TEMPLATE = """
// Design Command Bridge Plugin
// Generated by the command bridge - polls __BRIDGE_URL__ for commands

let BRIDGE_URL = '__BRIDGE_URL__';
const POLL_INTERVAL = __POLL_INTERVAL__; // ms
const FORGET_DELAY = __FORGET_DELAY__; // ms
const USE_LEASES = __USE_LEASES__;

let isRunning = false;
let pollTimer = null;
const executingCommands = new Set(); // ids dispatched in this session
const forgetTimers = new Map();
const unreported = new Map(); // id -> report body the bridge has not accepted yet

const LAYER_PROPERTIES = ['name', 'x', 'y', 'rotation', 'opacity', 'visible', 'locked'];
const FRAME_PROPERTIES = LAYER_PROPERTIES.concat(['width', 'height', 'cornerRadius', 'clipsContent', 'fills']);
const WRITABLE_PROPERTIES = {
  PAGE: ['name', 'backgrounds'],
  FRAME: FRAME_PROPERTIES,
  COMPONENT: FRAME_PROPERTIES.concat(['description']),
  GROUP: LAYER_PROPERTIES,
  RECTANGLE: LAYER_PROPERTIES.concat(['width', 'height', 'cornerRadius', 'fills']),
  TEXT: LAYER_PROPERTIES.concat(['characters', 'fontSize', 'fills'])
};

async function findNode(id) {
  return id ? await figma.getNodeByIdAsync(id) : null;
}

function findPage(id, name) {
  return figma.root.children.find(p => (id && p.id === id) || (name && p.name === name));
}

const handlers = {
  create_page: async (params) => {
    const page = figma.createPage();
    page.name = params.name || 'New Page';
    return { pageId: page.id, name: page.name };
  },

  rename_page: async (params) => {
    const page = findPage(params.pageId, params.oldName);
    if (!page) throw new Error('Page not found');
    page.name = params.name;
    return { pageId: page.id, name: page.name };
  },

  delete_page: async (params) => {
    const page = findPage(params.pageId, params.name);
    if (!page) throw new Error('Page not found');
    if (figma.root.children.length <= 1) throw new Error('Cannot delete last page');
    page.remove();
    return { deleted: true };
  },

  move_node: async (params) => {
    const node = await findNode(params.nodeId);
    if (!node) throw new Error('Node not found');
    let target;
    if (params.targetPageId || params.targetPageName) {
      target = findPage(params.targetPageId, params.targetPageName);
    } else if (params.targetNodeId) {
      target = await findNode(params.targetNodeId);
    }
    if (!target) throw new Error('Target not found');
    if (!('appendChild' in target)) throw new Error('Target cannot contain children');
    target.appendChild(node);
    return { moved: true, newParent: target.id };
  },

  rename_node: async (params) => {
    const node = await findNode(params.nodeId);
    if (!node) throw new Error('Node not found');
    node.name = params.name;
    return { nodeId: node.id, name: node.name };
  },

  delete_node: async (params) => {
    const node = await findNode(params.nodeId);
    if (!node) throw new Error('Node not found');
    node.remove();
    return { deleted: true };
  },

  create_frame: async (params) => {
    const frame = figma.createFrame();
    frame.name = params.name || 'Frame';
    frame.resize(params.width || 100, params.height || 100);
    if (params.x !== undefined) frame.x = params.x;
    if (params.y !== undefined) frame.y = params.y;
    if (params.parentId) {
      const parent = await findNode(params.parentId);
      if (parent && 'appendChild' in parent) parent.appendChild(frame);
    }
    return { nodeId: frame.id, name: frame.name };
  },

  create_component: async (params) => {
    let component;
    if (params.fromNodeId) {
      const node = await findNode(params.fromNodeId);
      if (!node) throw new Error('Source node not found');
      if (node.type !== 'FRAME' && node.type !== 'GROUP') {
        throw new Error('Can only create component from frame or group');
      }
      component = figma.createComponentFromNode(node);
    } else {
      component = figma.createComponent();
      component.resize(params.width || 100, params.height || 100);
    }
    if (params.name) component.name = params.name;
    return { componentId: component.id, name: component.name };
  },

  create_style: async (params) => {
    let style;
    switch (params.styleType) {
      case 'paint':
      case 'fill':
        style = figma.createPaintStyle();
        if (params.color) {
          style.paints = [{
            type: 'SOLID',
            color: {
              r: (params.color.r || 0) / 255,
              g: (params.color.g || 0) / 255,
              b: (params.color.b || 0) / 255
            }
          }];
        }
        break;
      case 'text':
        style = figma.createTextStyle();
        if (params.fontSize) style.fontSize = params.fontSize;
        if (params.fontFamily) {
          const fontName = { family: params.fontFamily, style: params.fontStyle || 'Regular' };
          await figma.loadFontAsync(fontName);
          style.fontName = fontName;
        }
        break;
      case 'effect':
        style = figma.createEffectStyle();
        break;
      case 'grid':
        style = figma.createGridStyle();
        break;
      default:
        throw new Error('Invalid style type');
    }
    style.name = params.name || 'New Style';
    return { styleId: style.id, name: style.name };
  },

  group_nodes: async (params) => {
    const nodes = [];
    for (const id of params.nodeIds || []) {
      const node = await findNode(id);
      if (node && node.parent) nodes.push(node);
    }
    if (nodes.length === 0) throw new Error('No valid nodes to group');
    const group = figma.group(nodes, nodes[0].parent);
    if (params.name) group.name = params.name;
    return { groupId: group.id, name: group.name };
  },

  ungroup_node: async (params) => {
    const node = await findNode(params.nodeId);
    if (!node || node.type !== 'GROUP') throw new Error('Node is not a group');
    const parent = node.parent;
    const children = [...node.children];
    for (const child of children) {
      if (parent && 'appendChild' in parent) parent.appendChild(child);
    }
    node.remove();
    return { ungrouped: true, childCount: children.length };
  },

  set_property: async (params) => {
    const node = await findNode(params.nodeId);
    if (!node) throw new Error('Node not found');
    const properties = params.properties || {};
    const writable = WRITABLE_PROPERTIES[node.type] || [];
    const rejected = Object.keys(properties).filter(key => !writable.includes(key)).sort();
    if (rejected.length > 0) {
      throw new Error('Properties not writable on ' + node.type + ': ' + rejected.join(', '));
    }
    for (const [key, value] of Object.entries(properties)) {
      if (key === 'width' || key === 'height') {
        node.resize(key === 'width' ? value : node.width, key === 'height' ? value : node.height);
      } else if (key === 'characters' || key === 'fontSize') {
        await figma.loadFontAsync(node.fontName);
        node[key] = value;
      } else {
        node[key] = value;
      }
    }
    return { nodeId: node.id, updated: Object.keys(properties) };
  },

  batch: async (params) => {
    const results = [];
    for (const cmd of params.commands || []) {
      try {
        if (cmd.type === 'batch') throw new Error('Nested batch commands are not supported');
        const handler = handlers[cmd.type];
        if (!handler) throw new Error('Unknown command type: ' + cmd.type);
        const result = await handler(cmd.params || {});
        results.push({ type: cmd.type, success: true, result });
      } catch (e) {
        results.push({ type: cmd.type, success: false, error: e.message });
      }
    }
    const failed = results.filter(r => !r.success).length;
    return { batchResults: results, succeeded: results.length - failed, failed };
  }
};

async function report(id, body) {
  // false means the bridge did not take the report; keep it for the next poll
  try {
    const response = await fetch(BRIDGE_URL + '/commands/' + encodeURIComponent(id) + '/complete', {
      method: 'POST',
      headers: { 'Content-Type': 'application/json' },
      body: JSON.stringify(body)
    });
    return response.status < 500;
  } catch (e) {
    return false;
  }
}

function forgetLater(id) {
  const timer = setTimeout(() => {
    executingCommands.delete(id);
    forgetTimers.delete(id);
  }, FORGET_DELAY);
  forgetTimers.set(id, timer);
}

function resetTracking() {
  for (const timer of forgetTimers.values()) clearTimeout(timer);
  forgetTimers.clear();
  executingCommands.clear();
  // Commands whose report never landed must not run again
  for (const id of unreported.keys()) executingCommands.add(id);
}

async function flushUnreported() {
  for (const [id, body] of Array.from(unreported.entries())) {
    if (await report(id, body)) {
      unreported.delete(id);
      forgetLater(id);
    }
  }
}

function notifyOutcome(cmd, outcome) {
  if (outcome.error !== undefined) {
    figma.notify('✗ ' + cmd.type + ': ' + outcome.error, { error: true });
  } else if (outcome.result && cmd.type === 'batch' && outcome.result.failed > 0) {
    figma.notify('✗ batch: ' + outcome.result.failed + ' of ' + outcome.result.batchResults.length +
      ' sub-commands failed', { error: true });
  } else {
    figma.notify('✓ ' + cmd.type);
  }
}

async function fetchCommands() {
  if (USE_LEASES) {
    const response = await fetch(BRIDGE_URL + '/commands/claim', {
      method: 'POST',
      headers: { 'Content-Type': 'application/json' },
      body: '{}'
    });
    return (await response.json()).commands || [];
  }
  const response = await fetch(BRIDGE_URL + '/commands');
  return (await response.json()).commands || [];
}

async function pollCommands() {
  if (!isRunning) return;

  try {
    await flushUnreported();
    const commands = await fetchCommands();
    for (const cmd of commands) {
      if (!isRunning) break;
      if (executingCommands.has(cmd.id)) continue;
      executingCommands.add(cmd.id);
      console.log('Executing command:', cmd.type, cmd.id);

      let outcome;
      try {
        const handler = handlers[cmd.type];
        if (!handler) throw new Error('Unknown command type: ' + cmd.type);
        outcome = { result: await handler(cmd.params || {}) };
      } catch (error) {
        outcome = { error: error.message || 'Unknown error' };
      }

      notifyOutcome(cmd, outcome);
      if (await report(cmd.id, outcome)) {
        forgetLater(cmd.id);
      } else {
        unreported.set(cmd.id, outcome);
      }
    }
  } catch (e) {
    // Bridge not available, silent retry
  }

  if (isRunning) pollTimer = setTimeout(pollCommands, POLL_INTERVAL);
}

async function checkConnection(url) {
  try {
    const response = await fetch(url + '/health', { method: 'GET' });
    if (!response.ok) throw new Error('Bad response');
    return { success: true };
  } catch (e) {
    return { success: false, error: e.message };
  }
}

figma.ui.onmessage = async (msg) => {
  if (msg.type === 'start') {
    const url = (msg.bridgeUrl || BRIDGE_URL).replace(/\\/+$/, '');
    const check = await checkConnection(url);
    if (!check.success) {
      figma.notify('❌ Connection refused - is the bridge running on ' + url + '?', { error: true });
      figma.ui.postMessage({ type: 'connection_failed', error: 'Connection refused' });
      return;
    }
    BRIDGE_URL = url;
    resetTracking();
    isRunning = true;
    pollCommands();
    figma.notify('🔗 Connected to command bridge at ' + BRIDGE_URL);
    figma.ui.postMessage({ type: 'connection_success' });
  } else if (msg.type === 'stop') {
    isRunning = false;
    if (pollTimer) clearTimeout(pollTimer);
    pollTimer = null;
    resetTracking();
    figma.notify('⏹ Disconnected from command bridge');
    figma.ui.postMessage({ type: 'disconnected' });
  }
};

figma.showUI(__html__, { width: 300, height: 240 });
"""


PLUGIN_UI_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <style>
    body { font-family: Inter, sans-serif; padding: 16px; margin: 0; background: #2c2c2c; color: #fff; }
    h2 { margin: 0 0 16px 0; font-size: 14px; font-weight: 600; }
    .status { padding: 12px; border-radius: 8px; margin-bottom: 16px; font-size: 12px; }
    .status.connected { background: #1e3a29; border: 1px solid #30a46c; }
    .status.disconnected { background: #3a1e1e; border: 1px solid #e5484d; }
    button { width: 100%; padding: 10px; border: none; border-radius: 6px; font-size: 12px; font-weight: 500; cursor: pointer; margin-bottom: 8px; }
    .btn-primary { background: #0d99ff; color: #fff; }
    .btn-secondary { background: #3c3c3c; color: #fff; }
    .info { font-size: 11px; color: #888; margin-top: 12px; }
    input { width: 100%; padding: 8px; border-radius: 4px; border: 1px solid #444; background: #333; color: #fff; font-size: 11px; margin-top: 4px; box-sizing: border-box; }
  </style>
</head>
<body>
  <h2>🔗 Command Bridge</h2>
  <div id="status" class="status disconnected">⏹ Disconnected</div>
  <button id="connectBtn" class="btn-primary" onclick="connect()">Connect</button>
  <button id="disconnectBtn" class="btn-secondary" onclick="disconnect()" style="display:none;">Disconnect</button>
  <div style="margin-bottom: 12px;">
    <label style="font-size: 11px; color: #aaa;">Bridge URL:</label>
    <input type="text" id="bridgeUrl" value="__BRIDGE_URL__">
  </div>
  <div class="info">Commands execute automatically while connected.</div>
  <script>
    let connected = false;
    let connecting = false;

    function connect() {
      if (connecting) return;
      connecting = true;
      document.getElementById('status').className = 'status disconnected';
      document.getElementById('status').textContent = '⏳ Connecting...';
      document.getElementById('connectBtn').disabled = true;
      const url = document.getElementById('bridgeUrl').value;
      parent.postMessage({ pluginMessage: { type: 'start', bridgeUrl: url } }, '*');
    }

    function disconnect() {
      parent.postMessage({ pluginMessage: { type: 'stop' } }, '*');
    }

    function updateUI() {
      document.getElementById('status').className = 'status ' + (connected ? 'connected' : 'disconnected');
      document.getElementById('status').textContent = connected ? '🟢 Connected' : '⏹ Disconnected';
      document.getElementById('connectBtn').style.display = connected ? 'none' : 'block';
      document.getElementById('connectBtn').disabled = false;
      document.getElementById('disconnectBtn').style.display = connected ? 'block' : 'none';
      document.getElementById('bridgeUrl').disabled = connected;
    }

    window.onmessage = (event) => {
      const msg = event.data.pluginMessage;
      if (!msg) return;
      connecting = false;
      if (msg.type === 'connection_success') {
        connected = true;
        updateUI();
      } else if (msg.type === 'connection_failed') {
        connected = false;
        document.getElementById('status').className = 'status disconnected';
        document.getElementById('status').textContent = '❌ Connection failed: ' + (msg.error || 'Unknown');
        document.getElementById('connectBtn').disabled = false;
      } else if (msg.type === 'disconnected') {
        connected = false;
        updateUI();
      }
    };
  </script>
</body>
</html>
"""


def _bridge_url(port: int) -> str:
    return f"http://localhost:{port}"


def generate_plugin_code(port: int, use_leases: bool = False) -> str:
    return (
        PLUGIN_CODE_TEMPLATE
        .replace("__BRIDGE_URL__", _bridge_url(port))
        .replace("__POLL_INTERVAL__", str(POLL_INTERVAL_MS))
        .replace("__FORGET_DELAY__", str(FORGET_DELAY_MS))
        .replace("__USE_LEASES__", "true" if use_leases else "false")
    )


def generate_plugin_ui(port: int) -> str:
    return PLUGIN_UI_TEMPLATE.replace("__BRIDGE_URL__", _bridge_url(port))


def generate_manifest() -> str:
    return json.dumps({
        "name": PLUGIN_NAME,
        "id": PLUGIN_ID,
        "api": "1.0.0",
        "main": "code.js",
        "ui": "ui.html",
        "capabilities": [],
        "enableProposedApi": False,
        "editorType": ["figma"],
        "documentAccess": "dynamic-page",
        "networkAccess": {
            "allowedDomains": ["http://localhost"],
            "devAllowedDomains": ["http://localhost"],
            "reasoning": "Connect to the local command bridge server",
        },
    }, indent=2)


def generate_plugin_package(port: int, use_leases: bool = False) -> Dict[str, str]:
    """File name -> content for the complete plugin."""
    return {
        "manifest.json": generate_manifest(),
        "code.js": generate_plugin_code(port, use_leases=use_leases),
        "ui.html": generate_plugin_ui(port),
    }


def export_plugin_package(directory: Union[str, Path], port: int, use_leases: bool = False) -> Path:
    """Write manifest.json, code.js and ui.html into ``directory``."""
    target = Path(directory)
    target.mkdir(parents=True, exist_ok=True)
    for filename, content in generate_plugin_package(port, use_leases=use_leases).items():
        (target / filename).write_text(content, encoding="utf-8")
    logger.info(f"📦 Plugin package written to {target}")
    return target
