# tests/test_loop_guard.py
"""
Tests for loop classification: boundedness, cancellation guards and
blocking-operation detection.
"""

from ssadata_shims.ir_builder import FunctionBuilder
from ssadata_shims.loop_guard import (
    BlockingCatalog, GuardKind, LoopGuardClassifier, LoopKind,
    classify_loops, is_done_channel, is_err_check, observes_cancellation,
)

from tests.conftest import (
    BACKGROUND, CTX, DONE_CHAN, HTTP_GET, LOG_PRINT, READ_FILE, SLEEP, TIME_AFTER, WG_WAIT,
    forever, make_program,
)


def _ctx_fn(name="poll"):
    return FunctionBuilder(name, [("ctx", CTX)])


def _classify(b):
    return LoopGuardClassifier(b.build()).classify()


def _done(b):
    return b.invoke(b.param("ctx"), "Done", type=DONE_CHAN)


def _sleep_loop(b):
    head = forever(b)
    sleep = b.call(SLEEP, 1)
    b.jump(head)
    return sleep


class TestBlockingLoops:

    def test_sleep_forever(self):
        b = _ctx_fn()
        sleep = _sleep_loop(b)
        [rec] = _classify(b)
        assert rec.classification is LoopKind.UNBOUNDED
        assert rec.guard is GuardKind.UNGUARDED
        assert rec.blocking is sleep
        assert rec.is_unguarded_blocking
        assert rec.header.index == 1

    def test_catalogued_calls(self):
        for callee, args in ((HTTP_GET, ["http://x"]), (READ_FILE, ["f"])):
            b = _ctx_fn()
            head = forever(b)
            b.call(callee, *args)
            b.jump(head)
            [rec] = _classify(b)
            assert rec.has_blocking

    def test_wait_group_method(self):
        b = FunctionBuilder("poll", [("ctx", CTX), ("wg", "*sync.WaitGroup")])
        head = forever(b)
        b.call(WG_WAIT, b.param("wg"))
        b.jump(head)
        [rec] = _classify(b)
        assert rec.is_unguarded_blocking

    def test_interface_read(self):
        b = FunctionBuilder("poll", [("ctx", CTX), ("src", "io.Reader")])
        head = forever(b)
        b.invoke(b.param("src"), "Read", b.make_slice("[]byte", 512), type="(int, error)")
        b.jump(head)
        [rec] = _classify(b)
        assert rec.is_unguarded_blocking

    def test_goroutine_spawn(self):
        worker = FunctionBuilder("worker")
        worker.ret()
        b = _ctx_fn()
        head = forever(b)
        b.go(worker.fn)
        b.jump(head)
        [rec] = _classify(b)
        assert rec.is_unguarded_blocking

    def test_defer_of_blocking_function(self):
        nap = FunctionBuilder("nap")
        nap.call(SLEEP, 1)
        nap.ret()
        b = _ctx_fn()
        head = forever(b)
        b.defer(nap.fn)
        b.jump(head)
        [rec] = _classify(b)
        assert rec.has_blocking

    def test_defer_of_harmless_function(self):
        note = FunctionBuilder("note")
        note.call(LOG_PRINT, note.varargs("tick"))
        note.ret()
        b = _ctx_fn()
        head = forever(b)
        b.defer(note.fn)
        b.jump(head)
        [rec] = _classify(b)
        assert not rec.has_blocking

    def test_custom_blocking_catalog(self):
        b = _ctx_fn()
        head = forever(b)
        b.call(LOG_PRINT, b.varargs("x"))
        b.jump(head)
        fn = b.build()
        assert not LoopGuardClassifier(fn).classify()[0].has_blocking
        catalog = BlockingCatalog(functions={"log.Print"})
        assert LoopGuardClassifier(fn, catalog).classify()[0].has_blocking

    def test_repr(self):
        b = _ctx_fn()
        _sleep_loop(b)
        [rec] = _classify(b)
        assert repr(rec) == "LoopRecord(main.poll, b1, unbounded, unguarded, blocking=True)"


class TestGuards:

    def test_select_on_done(self):
        b = _ctx_fn()
        head = forever(b)
        sel = b.select([("recv", _done(b)), ("recv", b.call(TIME_AFTER, 1))])
        leave, work = b.new_block(), b.new_block()
        b.if_(b.binop("==", b.extract(sel, 0), 0), leave, work)
        b.set_block(leave)
        b.ret()
        b.set_block(work)
        b.call(SLEEP, 1)
        b.jump(head)
        [rec] = _classify(b)
        assert rec.guard is GuardKind.GUARDED
        assert rec.classification is LoopKind.UNBOUNDED
        assert rec.has_blocking
        assert not rec.is_unguarded_blocking

    def test_select_wrong_case(self):
        b = _ctx_fn()
        head = forever(b)
        sel = b.select([("recv", b.call(TIME_AFTER, 1)), ("recv", _done(b))])
        leave, work = b.new_block(), b.new_block()
        b.if_(b.binop("==", b.extract(sel, 0), 0), leave, work)
        b.set_block(leave)
        b.ret()
        b.set_block(work)
        b.call(SLEEP, 1)
        b.jump(head)
        [rec] = _classify(b)
        assert rec.guard is GuardKind.UNGUARDED
        assert rec.classification is LoopKind.BOUNDED

    def test_err_check(self):
        b = _ctx_fn()
        head = forever(b)
        err = b.invoke(b.param("ctx"), "Err", type="error")
        leave, work = b.new_block(), b.new_block()
        b.if_(b.binop("!=", err, b.nil("error")), leave, work)
        b.set_block(leave)
        b.ret()
        b.set_block(work)
        b.call(SLEEP, 1)
        b.jump(head)
        [rec] = _classify(b)
        assert rec.guard is GuardKind.GUARDED
        assert not rec.is_unguarded_blocking

    def test_guard_plus_counter_is_bounded(self):
        b = FunctionBuilder("poll", [("ctx", CTX), ("n", "int")])
        head = b.new_block()
        b.jump(head)
        b.set_block(head)
        i = b.phi("int", [(b.fn.entry, 0)])
        check, work, leave = b.new_block(), b.new_block(), b.new_block()
        b.if_(b.binop("<", i, b.param("n")), check, leave)
        b.set_block(check)
        err = b.invoke(b.param("ctx"), "Err", type="error")
        b.if_(b.binop("!=", err, b.nil("error")), leave, work)
        b.set_block(work)
        b.call(SLEEP, 1)
        b.add_incoming(i, work, b.binop("+", i, 1))
        b.jump(head)
        b.set_block(leave)
        b.ret()
        [rec] = _classify(b)
        assert rec.classification is LoopKind.BOUNDED
        assert rec.guard is GuardKind.GUARDED


class TestNonBlockingLoops:

    def test_counter_loop(self):
        b = FunctionBuilder("poll", [("ctx", CTX), ("n", "int")])
        head, body, done = b.new_block(), b.new_block(), b.new_block()
        b.jump(head)
        b.set_block(head)
        i = b.phi("int", [(b.fn.entry, 0)])
        b.if_(b.binop("<", i, b.param("n")), body, done)
        b.set_block(body)
        b.call(SLEEP, 1)
        b.add_incoming(i, body, b.binop("+", i, 1))
        b.jump(head)
        b.set_block(done)
        b.ret()
        [rec] = _classify(b)
        assert rec.classification is LoopKind.BOUNDED
        assert rec.has_blocking
        assert not rec.is_unguarded_blocking

    def test_channel_range(self):
        b = FunctionBuilder("drain", [("ctx", CTX), ("ch", "chan int")])
        head, body, done = b.new_block(), b.new_block(), b.new_block()
        b.jump(head)
        b.set_block(head)
        r = b.recv(b.param("ch"), comma_ok=True)
        b.if_(b.extract(r, 1), body, done)
        b.set_block(body)
        b.jump(head)
        b.set_block(done)
        b.ret()
        [rec] = _classify(b)
        assert rec.classification is LoopKind.BOUNDED
        assert not rec.has_blocking

    def test_bare_select(self):
        b = FunctionBuilder("pump", [("ctx", CTX), ("a", "chan int"), ("c", "chan int")])
        head = forever(b)
        sel = b.select([("recv", b.param("a")), ("recv", b.param("c"))])
        first, second = b.new_block(), b.new_block()
        b.if_(b.binop("==", b.extract(sel, 0), 0), first, second)
        for block in (first, second):
            b.set_block(block)
            b.jump(head)
        [rec] = _classify(b)
        assert rec.classification is LoopKind.UNBOUNDED
        assert not rec.has_blocking
        assert not rec.is_unguarded_blocking

    def test_no_loops(self):
        b = _ctx_fn()
        b.call(SLEEP, 1)
        b.ret()
        assert _classify(b) == []


class TestClassifyLoops:

    def test_requires_context_by_default(self):
        b = FunctionBuilder("spin")
        _sleep_loop(b)
        prog = make_program(b.build())
        assert classify_loops(prog) == []
        assert len(classify_loops(prog, require_context=False)) == 1

    def test_locally_created_context_counts(self):
        b = FunctionBuilder("spin")
        b.call(BACKGROUND)
        _sleep_loop(b)
        assert len(classify_loops(make_program(b.build()))) == 1

    def test_every_function_in_order(self):
        a = _ctx_fn("a")
        _sleep_loop(a)
        c = _ctx_fn("c")
        c.ret()
        z = _ctx_fn("z")
        _sleep_loop(z)
        records = classify_loops(make_program(a.build(), c.build(), z.build()))
        assert [r.function.name for r in records] == ["a", "z"]


class TestCancellationShapes:

    def test_done_channel(self):
        b = FunctionBuilder("f", [("ctx", CTX), ("w", "*main.Worker")])
        done = _done(b)
        other = b.invoke(b.param("w"), "Done", type=DONE_CHAN)
        b.ret()
        b.build()
        assert is_done_channel(done)
        assert not is_done_channel(other)
        assert not is_done_channel(b.param("ctx"))

    def test_err_call(self):
        b = _ctx_fn()
        err = b.invoke(b.param("ctx"), "Err", type="error")
        b.ret()
        b.build()
        assert is_err_check(err)
        assert not is_err_check(b.param("ctx"))

    def test_negated_receive_ok(self):
        b = _ctx_fn()
        r = b.recv(_done(b), "struct{}", comma_ok=True)
        ok = b.extract(r, 1)
        neg = b.unop("!", ok)
        b.ret()
        b.build()
        assert observes_cancellation(ok)
        assert observes_cancellation(neg)

    def test_through_phi(self):
        b = FunctionBuilder("f", [("ctx", CTX), ("c", "bool")])
        err = b.invoke(b.param("ctx"), "Err", type="error")
        left, right, join = b.new_block(), b.new_block(), b.new_block()
        b.if_(b.param("c"), left, right)
        b.set_block(left)
        chk = b.binop("!=", err, b.nil("error"))
        b.jump(join)
        b.set_block(right)
        b.jump(join)
        b.set_block(join)
        p = b.phi("bool", [(left, chk), (right, False)])
        b.ret()
        b.build()
        assert observes_cancellation(p)

    def test_plain_condition(self):
        b = FunctionBuilder("f", [("n", "int")])
        cond = b.binop("<", b.param("n"), 3)
        b.ret()
        b.build()
        assert not observes_cancellation(cond)
        assert not observes_cancellation(b.param("n"))
