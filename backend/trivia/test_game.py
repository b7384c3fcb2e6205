from __future__ import annotations

import asyncio
import random
from unittest import IsolatedAsyncioTestCase, mock

from backend.trivia.clock import QuestionClock
from backend.trivia.errors import (
    InvalidPayloadError,
    InvalidRoleError,
    NameTakenError,
    SessionAlreadyStartedError,
    SessionNotFoundError,
)
from backend.trivia.game import GameController
from backend.trivia.hub import ConnectionHub
from backend.trivia.models import Question, SessionStatus
from backend.trivia.registry import HostLeft, PlayerLeft, SessionRegistry


class _FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def set(self, offset: float):
        self.now = 1000.0 + offset


class _FakeSocket:
    def __init__(self):
        self.sent: list[dict] = []

    async def send_json(self, data):
        self.sent.append(data)

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent]

    def last(self, event_type: str) -> dict:
        for m in reversed(self.sent):
            if m["type"] == event_type:
                return m["payload"]
        raise AssertionError(f"no {event_type!r} message in {self.types()}")


def _questions(*correct: int, time_limit: float = 10) -> list[Question]:
    return [
        Question(prompt=f"Q{i + 1}", options=["w", "x", "y", "z"], correct_option_index=c, time_limit_seconds=time_limit)
        for i, c in enumerate(correct)
    ]


class GameControllerTestCase(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = _FakeClock()
        patcher = mock.patch("backend.trivia.session.now_ts", self.clock)
        patcher.start()
        self.addCleanup(patcher.stop)

        self.registry = SessionRegistry(pin_length=6, max_players=0, rng=random.Random(5))
        self.hub = ConnectionHub()
        self.controller = GameController(self.registry, self.hub, buffer_sec=1.0, result_size=5)
        self.sockets: dict[str, _FakeSocket] = {}

    async def asyncTearDown(self) -> None:
        await self.controller.shutdown()

    def connect(self, conn_id: str) -> _FakeSocket:
        sock = _FakeSocket()
        self.hub.register(sock, conn_id)
        self.sockets[conn_id] = sock
        return sock

    async def setup_game(self, questions, players=("A", "B")):
        self.connect("host")
        code = await self.controller.create_session("host", questions)
        for name in players:
            pid = name.lower()
            self.connect(pid)
            await self.controller.join(pid, code, name)
        return code, self.registry.get_by_code(code)

    def count(self, conn_id: str, event_type: str) -> int:
        return self.sockets[conn_id].types().count(event_type)


class EndToEndTests(GameControllerTestCase):
    async def test_two_question_game(self):
        code, s = await self.setup_game(_questions(0, 1))
        host = self.sockets["host"]
        self.assertEqual(host.last("session_created"), {"code": code})

        await self.controller.start("host")
        self.assertEqual(self.sockets["a"].types()[-2:], ["game_started", "question"])
        q1 = self.sockets["a"].last("question")
        self.assertEqual((q1["number"], q1["total"], q1["time_limit"]), (1, 2, 10))
        self.assertEqual(q1["deadline_ts"], 1011.0)
        self.assertNotIn("correct_option_index", q1)

        self.clock.set(2)
        self.assertTrue(await self.controller.submit_answer("a", 0))
        self.assertEqual(host.last("answers_update"), {"count": 1, "total": 2})
        self.clock.set(3)
        self.assertTrue(await self.controller.submit_answer("b", 2))

        # everyone answered, so the question closed without waiting for the timer
        a, b = s.players["a"], s.players["b"]
        self.assertEqual((a.score, a.streak), (1, 1))
        self.assertEqual((b.score, b.streak), (0, 0))
        result = host.last("question_result")
        self.assertEqual(result["correct_option_index"], 0)
        self.assertEqual([p["name"] for p in result["leaderboard"]], ["A", "B"])

        await self.controller.next_question("host")
        self.assertEqual(self.sockets["b"].last("question")["number"], 2)

        # nobody answers; the deadline closes the question
        self.clock.set(14)
        await self.controller.on_deadline(s, 1)
        self.assertEqual((a.score, a.streak), (1, 0))
        self.assertEqual((b.score, b.streak), (0, 0))
        self.assertEqual([p["name"] for p in host.last("question_result")["leaderboard"]], ["A", "B"])

        await self.controller.next_question("host")
        self.assertEqual(s.status, SessionStatus.FINISHED)
        final = self.sockets["b"].last("game_over")["leaderboard"]
        self.assertEqual([(p["name"], p["score"]) for p in final], [("A", 1), ("B", 0)])
        self.assertEqual(self.count("host", "question_result"), 2)
        self.assertEqual(self.count("host", "question"), 2)

    async def test_empty_question_list_goes_straight_to_game_over(self):
        _, s = await self.setup_game([])
        await self.controller.start("host")

        self.assertEqual(s.status, SessionStatus.FINISHED)
        self.assertEqual(self.sockets["a"].types()[-2:], ["game_started", "game_over"])


class ClosureRaceTests(GameControllerTestCase):
    async def test_deadline_after_all_answered_is_ignored(self):
        _, s = await self.setup_game(_questions(0, 0))
        await self.controller.start("host")
        await self.controller.submit_answer("a", 0)
        await self.controller.submit_answer("b", 0)

        await self.controller.on_deadline(s, 0)

        self.assertEqual(self.count("host", "question_result"), 1)
        self.assertEqual(s.players["a"].score, 1)
        self.assertEqual(s.players["a"].streak, 1)

    async def test_deadline_first_then_late_answer(self):
        _, s = await self.setup_game(_questions(0, 0))
        await self.controller.start("host")
        await self.controller.submit_answer("a", 0)

        await self.controller.on_deadline(s, 0)
        # question no longer accepts answers, so "all answered" can never fire
        self.assertFalse(await self.controller.submit_answer("b", 0))

        self.assertEqual(self.count("host", "question_result"), 1)
        self.assertEqual(s.players["b"].score, 0)
        self.assertNotIn("b", s.answers[0])

    async def test_stale_timer_for_previous_question(self):
        _, s = await self.setup_game(_questions(0, 0))
        await self.controller.start("host")
        await self.controller.next_question("host")

        await self.controller.on_deadline(s, 0)

        self.assertEqual(s.current_index, 1)
        self.assertNotIn(1, s.closed_questions)
        self.assertEqual(self.count("host", "question_result"), 1)

    async def test_timer_after_host_left(self):
        _, s = await self.setup_game(_questions(0))
        await self.controller.start("host")
        await self.controller.disconnect("host")
        before = list(self.sockets["a"].sent)

        await self.controller.on_deadline(s, 0)

        self.assertEqual(self.sockets["a"].sent, before)
        self.assertEqual(s.closed_questions, set())

    async def test_duplicate_answers_change_nothing(self):
        _, s = await self.setup_game(_questions(0, 0), players=("A", "B", "C"))
        await self.controller.start("host")
        self.clock.set(2)
        self.assertTrue(await self.controller.submit_answer("a", 0))
        self.clock.set(5)
        self.assertFalse(await self.controller.submit_answer("a", 1))
        self.assertFalse(await self.controller.submit_answer("a", 0))

        self.assertEqual(self.count("a", "answer_received"), 1)
        self.assertEqual(self.count("host", "answers_update"), 1)
        await self.controller.on_deadline(s, 0)
        self.assertEqual(s.players["a"].total_response_time_seconds, 2)
        self.assertEqual(s.players["a"].score, 1)

    async def test_host_advance_closes_open_question(self):
        _, s = await self.setup_game(_questions(0, 0))
        await self.controller.start("host")
        await self.controller.submit_answer("a", 0)

        await self.controller.next_question("host")

        self.assertEqual(self.sockets["host"].types()[-2:], ["question_result", "question"])
        self.assertEqual(s.players["a"].score, 1)
        self.assertEqual(s.players["b"].streak, 0)

    async def test_leaving_player_can_complete_the_round(self):
        _, s = await self.setup_game(_questions(0, 0))
        await self.controller.start("host")
        await self.controller.submit_answer("a", 0)

        await self.controller.disconnect("b")

        self.assertIn(0, s.closed_questions)
        self.assertEqual(self.sockets["a"].types()[-3:], ["player_left", "players_update", "question_result"])

    async def test_real_clock_fires_deadline(self):
        fired = asyncio.Event()
        seen = []

        async def on_deadline(session, index):
            seen.append((session, index))
            fired.set()

        clock = QuestionClock(on_deadline, buffer_sec=0)
        clock.schedule(mock.Mock(code="999999"), 3, 0.01)

        await asyncio.wait_for(fired.wait(), timeout=1)
        self.assertEqual(seen[0][1], 3)
        await asyncio.sleep(0.01)
        self.assertEqual(clock.pending, 0)


class HostControlTests(GameControllerTestCase):
    async def test_only_host_can_start_or_advance(self):
        await self.setup_game(_questions(0))
        with self.assertRaises(InvalidRoleError):
            await self.controller.start("a")
        with self.assertRaises(InvalidRoleError):
            await self.controller.next_question("a")

    async def test_start_twice_is_a_no_op(self):
        _, s = await self.setup_game(_questions(0, 0))
        await self.controller.start("host")
        await self.controller.start("host")

        self.assertEqual(s.current_index, 0)
        self.assertEqual(self.count("host", "game_started"), 1)

    async def test_advance_in_lobby_is_ignored(self):
        _, s = await self.setup_game(_questions(0))
        await self.controller.next_question("host")
        self.assertEqual(s.status, SessionStatus.LOBBY)
        self.assertEqual(s.current_index, -1)

    async def test_result_leaderboard_is_truncated(self):
        self.controller.result_size = 2
        _, s = await self.setup_game(_questions(0), players=("A", "B", "C"))
        await self.controller.start("host")
        await self.controller.next_question("host")

        self.assertEqual(len(self.sockets["host"].last("question_result")["leaderboard"]), 2)
        self.assertEqual(len(self.sockets["host"].last("game_over")["leaderboard"]), 3)


class JoinAndLeaveTests(GameControllerTestCase):
    async def test_join_broadcasts_player_list(self):
        code, _ = await self.setup_game(_questions(0), players=("A",))
        self.connect("b")
        await self.controller.join("b", code, "B")

        self.assertEqual(self.sockets["b"].last("joined"), {"code": code, "name": "B"})
        names = [p["name"] for p in self.sockets["host"].last("players_update")["players"]]
        self.assertEqual(names, ["A", "B"])

    async def test_join_errors_are_raised_to_the_caller(self):
        code, _ = await self.setup_game(_questions(0), players=("A",))
        self.connect("x")
        with self.assertRaises(NameTakenError):
            await self.controller.join("x", code, "A")
        with self.assertRaises(SessionNotFoundError):
            await self.controller.join("x", "000000", "X")

        await self.controller.start("host")
        with self.assertRaises(SessionAlreadyStartedError):
            await self.controller.join("x", code, "X")
        self.assertNotIn("players_update", self.sockets["x"].types())

    async def test_player_leaves(self):
        code, s = await self.setup_game(_questions(0))
        departure = await self.controller.disconnect("b")

        self.assertEqual(departure, PlayerLeft(code=code, name="B"))
        self.assertEqual(self.sockets["a"].last("player_left"), {"name": "B"})
        self.assertEqual([p["name"] for p in self.sockets["host"].last("players_update")["players"]], ["A"])
        self.assertNotIn("b", s.players)

    async def test_host_leaves_mid_game(self):
        code, _ = await self.setup_game(_questions(0, 0))
        await self.controller.start("host")

        departure = await self.controller.disconnect("host")

        self.assertEqual(departure, HostLeft(code=code))
        self.assertEqual(self.sockets["a"].types()[-1], "host_disconnected")
        self.assertIsNone(self.registry.get_by_code(code))
        self.connect("late")
        with self.assertRaises(SessionNotFoundError):
            await self.controller.join("late", code, "Late")

    async def test_unknown_disconnect(self):
        self.assertIsNone(await self.controller.disconnect("nobody"))


class HandleMessageTests(GameControllerTestCase):
    async def test_routes_messages(self):
        self.connect("host")
        await self.controller.handle(
            "host",
            '{"type": "create_session", "questions": [{"prompt": "?", "options": ["a", "b"], '
            '"correct_option_index": 1, "time_limit_seconds": 5}]}',
        )
        code = self.sockets["host"].last("session_created")["code"]

        self.connect("p1")
        await self.controller.handle("p1", {"type": "join_session", "code": int(code), "name": "  Ann "})
        await self.controller.handle("host", {"type": "start_session"})
        await self.controller.handle("p1", {"type": "submit_answer", "option_index": "1"})

        s = self.registry.get_by_code(code)
        self.assertEqual(s.players["p1"].name, "Ann")
        self.assertEqual(s.players["p1"].score, 1)

        await self.controller.handle("host", {"type": "next_question"})
        self.assertEqual(s.status, SessionStatus.FINISHED)

    async def test_rejects_malformed_messages(self):
        bad = [
            "not json",
            "[1, 2]",
            {"no": "type"},
            {"type": "launch_missiles"},
            {"type": "join_session", "code": "123456"},
            {"type": "submit_answer", "option_index": "first"},
            {"type": "create_session", "questions": [{"prompt": "?", "options": ["a"]}]},
        ]
        for data in bad:
            with self.subTest(data=data), self.assertRaises(InvalidPayloadError):
                await self.controller.handle("someone", data)

    async def test_null_point_value_scores_one(self):
        self.connect("host")
        await self.controller.handle(
            "host",
            b'{"type": "create_session", "questions": [{"prompt": "?", "options": ["a", "b"], '
            b'"correct_option_index": 0, "time_limit_seconds": 5, "point_value": null}]}',
        )
        code = self.sockets["host"].last("session_created")["code"]

        self.connect("p1")
        await self.controller.handle("p1", {"type": "join_session", "code": code, "name": "Ann"})
        await self.controller.handle("host", {"type": "start_session"})
        await self.controller.handle("p1", {"type": "submit_answer", "option_index": 0})

        s = self.registry.get_by_code(code)
        self.assertEqual(s.questions[0].point_value, 1)
        self.assertEqual(s.players["p1"].score, 1)
