"""
Client runtime prelude and module emission.

RUNTIME_JS defines `rx`, the helper object every compiled client expression
calls into. Each helper mirrors the server-side helper of the same name in
reactive.expr: same type restrictions, same Python semantics (truthiness,
equality, % sign, floor division, banker's rounding, code-point lengths),
same failures.

emit_module(component) produces the ES module the client loads: the
prelude, the mirrored derivations with their dependency lists, the
optimistic actions and the animated-field metadata.
"""

import json


RUNTIME_JS = """\
const rx = (() => {
  "use strict";

  const REMOVE = Object.freeze({ __rxRemove: true });

  // Python str.isspace() code points.
  const SPACE = new Set([
    9, 10, 11, 12, 13, 28, 29, 30, 31, 32, 133, 160, 5760,
    8192, 8193, 8194, 8195, 8196, 8197, 8198, 8199, 8200, 8201, 8202,
    8232, 8233, 8239, 8287, 12288,
  ]);

  const hasOwn = (o, k) => Object.prototype.hasOwnProperty.call(o, k);
  const isNil = (v) => v === null || v === undefined;
  const isNum = (v) => typeof v === "number" || typeof v === "boolean";
  const num = (v) => (typeof v === "boolean" ? (v ? 1 : 0) : v);
  const isCount = (v) => typeof v === "number" && Number.isInteger(v);
  const isRecord = (v) => !isNil(v) && typeof v === "object" && !Array.isArray(v);

  function typeName(v) {
    if (isNil(v)) return "NoneType";
    if (typeof v === "boolean") return "bool";
    if (typeof v === "number") return Number.isInteger(v) ? "int" : "float";
    if (typeof v === "string") return "str";
    if (Array.isArray(v)) return "list";
    return "dict";
  }

  function fail(message) {
    throw new TypeError(message);
  }

  function requireNums(op, a, b) {
    if (!(isNum(a) && isNum(b))) {
      fail(`unsupported operand types for ${op}: '${typeName(a)}' and '${typeName(b)}'`);
    }
  }

  function requireStr(op, v) {
    if (typeof v !== "string") fail(`${op}() expects a string, not '${typeName(v)}'`);
    return v;
  }

  function finite(op, v) {
    if (!isNum(v)) fail(`${op}() expects a number, not '${typeName(v)}'`);
    v = num(v);
    if (!Number.isFinite(v)) throw new RangeError(`cannot ${op} non-finite value ${v}`);
    return v;
  }

  function truthy(v) {
    if (isNil(v)) return false;
    if (typeof v === "number") return v !== 0;
    if (Array.isArray(v)) return v.length > 0;
    if (typeof v === "object") return Object.keys(v).length > 0;
    return Boolean(v);
  }

  function eq(a, b) {
    if (isNum(a) && isNum(b)) return num(a) === num(b);
    if (isNil(a) || isNil(b)) return isNil(a) && isNil(b);
    if (Array.isArray(a) || Array.isArray(b)) {
      if (!(Array.isArray(a) && Array.isArray(b)) || a.length !== b.length) return false;
      return a.every((x, i) => eq(x, b[i]));
    }
    if (typeof a === "object" && typeof b === "object") {
      const keys = Object.keys(a);
      if (keys.length !== Object.keys(b).length) return false;
      return keys.every((k) => hasOwn(b, k) && eq(a[k], b[k]));
    }
    return a === b;
  }

  function codePoints(s) {
    return Array.from(s);
  }

  function compareStr(a, b) {
    const x = codePoints(a);
    const y = codePoints(b);
    const n = Math.min(x.length, y.length);
    for (let i = 0; i < n; i++) {
      const d = x[i].codePointAt(0) - y[i].codePointAt(0);
      if (d !== 0) return d;
    }
    return x.length - y.length;
  }

  function order(op, a, b) {
    let d;
    if (isNum(a) && isNum(b)) {
      a = num(a);
      b = num(b);
      if (op === "<") return a < b;
      if (op === "<=") return a <= b;
      if (op === ">") return a > b;
      return a >= b;
    }
    if (typeof a === "string" && typeof b === "string") {
      d = compareStr(a, b);
      if (op === "<") return d < 0;
      if (op === "<=") return d <= 0;
      if (op === ">") return d > 0;
      return d >= 0;
    }
    fail(`'${op}' not supported between '${typeName(a)}' and '${typeName(b)}'`);
  }

  function repeat(seq, n) {
    n = Math.max(n, 0);
    if (typeof seq === "string") return seq.repeat(n);
    let out = [];
    for (let i = 0; i < n; i++) out = out.concat(seq);
    return out;
  }

  function add(a, b) {
    if (isNum(a) && isNum(b)) return num(a) + num(b);
    if (typeof a === "string" && typeof b === "string") return a + b;
    if (Array.isArray(a) && Array.isArray(b)) return a.concat(b);
    fail(`unsupported operand types for +: '${typeName(a)}' and '${typeName(b)}'`);
  }

  function sub(a, b) {
    requireNums("-", a, b);
    return num(a) - num(b);
  }

  function mul(a, b) {
    if (isNum(a) && isNum(b)) return num(a) * num(b);
    if ((typeof a === "string" || Array.isArray(a)) && isCount(b)) return repeat(a, b);
    if (isCount(a) && (typeof b === "string" || Array.isArray(b))) return repeat(b, a);
    fail(`unsupported operand types for *: '${typeName(a)}' and '${typeName(b)}'`);
  }

  function div(a, b) {
    requireNums("/", a, b);
    if (num(b) === 0) throw new RangeError("division by zero");
    return num(a) / num(b);
  }

  // Same steps as CPython's float floor division and modulo.
  function floordiv(a, b) {
    requireNums("//", a, b);
    a = num(a);
    b = num(b);
    if (b === 0) throw new RangeError("integer division or modulo by zero");
    const m = a % b;
    let d = (a - m) / b;
    if (m !== 0 && (b < 0) !== (m < 0)) d -= 1;
    if (d === 0) return a / b < 0 ? -0 : 0;
    let f = Math.floor(d);
    if (d - f > 0.5) f += 1;
    return f;
  }

  function mod(a, b) {
    requireNums("%", a, b);
    a = num(a);
    b = num(b);
    if (b === 0) throw new RangeError("integer division or modulo by zero");
    let m = a % b;
    if (m !== 0) {
      if ((b < 0) !== (m < 0)) m += b;
    } else {
      m = b < 0 ? -0 : 0;
    }
    return m;
  }

  function neg(v) {
    if (!isNum(v)) fail(`bad operand type for neg: '${typeName(v)}'`);
    return -num(v);
  }

  function list(v) {
    if (!Array.isArray(v)) fail(`'${typeName(v)}' is not a list`);
    return v;
  }

  function record(v) {
    if (!isRecord(v)) fail(`cannot spread '${typeName(v)}' into a record`);
    return v;
  }

  function contains(container, item) {
    if (typeof container === "string") {
      if (typeof item !== "string") fail(`'in <string>' requires string, not '${typeName(item)}'`);
      return container.includes(item);
    }
    if (Array.isArray(container)) return container.some((x) => eq(x, item));
    if (isRecord(container)) {
      if (Array.isArray(item) || isRecord(item)) fail(`unhashable type: '${typeName(item)}'`);
      return typeof item === "string" && hasOwn(container, item);
    }
    fail(`argument of type '${typeName(container)}' is not a container`);
  }

  function len(v) {
    if (typeof v === "string") return codePoints(v).length;
    if (Array.isArray(v)) return v.length;
    if (isRecord(v)) return Object.keys(v).length;
    fail(`object of type '${typeName(v)}' has no length`);
  }

  function sum(v) {
    return list(v).reduce((acc, x) => {
      requireNums("+", acc, x);
      return acc + num(x);
    }, 0);
  }

  function join(v, sep) {
    const items = list(v);
    if (typeof sep !== "string" || !items.every((i) => typeof i === "string")) {
      fail("join() expects a list of strings and a string separator");
    }
    return items.join(sep);
  }

  function index(obj, key) {
    if (typeof obj === "string" || Array.isArray(obj)) {
      if (!isCount(key)) fail(`indices must be integers, not '${typeName(key)}'`);
      const seq = typeof obj === "string" ? codePoints(obj) : obj;
      const i = key < 0 ? seq.length + key : key;
      if (i < 0 || i >= seq.length) throw new RangeError("index out of range");
      return seq[i];
    }
    if (isRecord(obj)) {
      if (typeof key !== "string" || !hasOwn(obj, key)) {
        throw new RangeError(`key ${JSON.stringify(key)} not found`);
      }
      return obj[key];
    }
    fail(`'${typeName(obj)}' object is not subscriptable`);
  }

  function attr(obj, name) {
    if (isNil(obj)) fail(`cannot read '${name}' of None`);
    if (!isRecord(obj)) fail(`'${typeName(obj)}' has no field '${name}'`);
    if (!hasOwn(obj, name)) throw new RangeError(`key ${JSON.stringify(name)} not found`);
    return obj[name];
  }

  function get(obj, name) {
    if (isNil(obj)) return null;
    if (!isRecord(obj)) fail(`'${typeName(obj)}' has no field '${name}'`);
    return hasOwn(obj, name) ? obj[name] : null;
  }

  function trim(s) {
    const cs = codePoints(requireStr("trim", s));
    let start = 0;
    let end = cs.length;
    while (start < end && SPACE.has(cs[start].codePointAt(0))) start++;
    while (end > start && SPACE.has(cs[end - 1].codePointAt(0))) end--;
    return cs.slice(start, end).join("");
  }

  function blank(v) {
    if (isNil(v)) return true;
    return typeof v === "string" && trim(v) === "";
  }

  function round(v) {
    v = finite("round", v);
    const f = Math.floor(v);
    const diff = v - f;
    if (diff > 0.5) return f + 1;
    if (diff < 0.5) return f;
    return f % 2 === 0 ? f : f + 1;
  }

  function pick(op, args) {
    const items = args.length === 1 ? list(args[0]) : args;
    if (items.length === 0) throw new RangeError(`${op}() arg is an empty sequence`);
    let best = items[0];
    for (const x of items.slice(1)) {
      if (order(op === "min" ? "<" : ">", x, best)) best = x;
    }
    return best;
  }

  function applyAction(action, state, value, arg) {
    const current = state[action.field];
    const limit = action.maxField === null ? null : state[action.maxField];
    if (!isNil(limit) && order(">=", len(current), limit)) {
      return { applied: false, reason: "max" };
    }
    if (action.validate !== null && !truthy(action.validate(state, current, value))) {
      return { applied: false, reason: "invalid" };
    }
    if (action.key === null) {
      return { applied: true, value: action.run(state, current, value) };
    }
    const target = isNil(arg) ? value : arg;
    const next = [];
    for (const item of list(current)) {
      if (!eq(index(item, action.key), target)) {
        next.push(item);
        continue;
      }
      const out = action.run(state, item, value);
      if (out !== REMOVE) next.push(out);
    }
    return { applied: true, value: next };
  }

  return Object.freeze({
    REMOVE,
    truthy,
    eq,
    add,
    sub,
    mul,
    div,
    floordiv,
    mod,
    neg,
    lt: (a, b) => order("<", a, b),
    le: (a, b) => order("<=", a, b),
    gt: (a, b) => order(">", a, b),
    ge: (a, b) => order(">=", a, b),
    and: (l, r) => (truthy(l) ? r() : l),
    or: (l, r) => (truthy(l) ? l : r()),
    contains,
    len,
    sum,
    join,
    index,
    attr,
    get,
    list,
    record,
    blank,
    trim,
    upper: (s) => requireStr("upper", s).toUpperCase(),
    lower: (s) => requireStr("lower", s).toLowerCase(),
    startsWith: (s, p) => requireStr("starts_with", s).startsWith(requireStr("starts_with", p)),
    endsWith: (s, p) => requireStr("ends_with", s).endsWith(requireStr("ends_with", p)),
    round,
    floor: (v) => Math.floor(finite("floor", v)),
    ceil: (v) => Math.ceil(finite("ceil", v)),
    abs: (v) => Math.abs(finite("abs", v)),
    min: (...args) => pick("min", args),
    max: (...args) => pick("max", args),
    applyAction,
    untranspilable: (reason) => {
      throw new Error(`untranspilable: ${reason}`);
    },
  });
})();
"""


def _js_obj(entries, indent="  "):
    if not entries:
        return "{}"
    body = ",\n".join(f"{indent}{json.dumps(k)}: {v}" for k, v in entries)
    return "{\n" + body + ",\n}"


def emit_module(component) -> str:
    """Emit the client ES module for a built ComponentType."""
    fields = []
    for f in component.fields.values():
        if not f.optimistic:
            continue
        meta = {"group": f.group, "default": f.default}
        if f.animated is not None:
            meta["animated"] = {
                "asyncField": f.animated.async_field,
                "duration": f.animated.duration,
                "preserve": f.animated.preserve,
            }
        fields.append((f.name, json.dumps(meta)))

    derived = []
    for name in component.client_mirrored:
        compiled = component.compiled[name]
        deps = json.dumps(list(component.graph.dependencies_of(name)))
        derived.append((name, f"{{ deps: {deps}, compute: {compiled.client_source} }}"))

    actions = []
    for action in component.actions.values():
        if not action.client_ready:
            continue
        actions.append((action.name, action.to_js()))

    return "\n".join([
        f"// Client module for component {json.dumps(component.name)}.",
        RUNTIME_JS,
        f"export const component = {json.dumps(component.name)};",
        f"export const fields = {_js_obj(fields)};",
        f"export const derived = {_js_obj(derived)};",
        f"export const actions = {_js_obj(actions)};",
        "export { rx };",
        "",
    ])
