from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from lexer import KEYWORD_SPELLINGS, MiniPySyntaxError, Token, TokenType


class ParseError(MiniPySyntaxError):
    """Raised when parsing fails."""


@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


@dataclass(frozen=True)
class Node:
    location: SourceLocation

    # The tree is read-only once parsed; VM snapshots share it instead of copying.
    def __deepcopy__(self, memo: Dict[int, Any]) -> "Node":
        return self


@dataclass(frozen=True)
class Program(Node):
    statements: List["Statement"]


class Statement(Node):
    pass


@dataclass(frozen=True)
class Block(Node):
    statements: List[Statement]


@dataclass(frozen=True)
class Assignment(Statement):
    target: str
    expression: "Expression"


@dataclass(frozen=True)
class AugmentedAssignment(Statement):
    target: str
    operator: str
    expression: "Expression"


@dataclass(frozen=True)
class IndexAssignment(Statement):
    base: "Expression"
    index: "Expression"
    expression: "Expression"


@dataclass(frozen=True)
class MemberAssignment(Statement):
    base: "Expression"
    member: str
    expression: "Expression"


@dataclass(frozen=True)
class ExpressionStatement(Statement):
    expression: "Expression"


@dataclass(frozen=True)
class IfBranch:
    condition: "Expression"
    block: Block

    def __deepcopy__(self, memo: Dict[int, Any]) -> "IfBranch":
        return self


@dataclass(frozen=True)
class IfStatement(Statement):
    condition: "Expression"
    then_block: Block
    elifs: List[IfBranch]
    else_block: Optional[Block]


@dataclass(frozen=True)
class WhileStatement(Statement):
    condition: "Expression"
    block: Block


@dataclass(frozen=True)
class RepeatStatement(Statement):
    count: "Expression"
    block: Block


@dataclass(frozen=True)
class ForRangeStatement(Statement):
    counter: str
    start: Optional["Expression"]
    stop: "Expression"
    step: Optional["Expression"]
    block: Block


@dataclass(frozen=True)
class ForEachStatement(Statement):
    counter: str
    iterable: "Expression"
    block: Block


@dataclass(frozen=True)
class FuncDef(Statement):
    name: str
    params: List[str]
    body: Block


@dataclass(frozen=True)
class ReturnStatement(Statement):
    expression: Optional["Expression"]


@dataclass(frozen=True)
class BreakStatement(Statement):
    pass


@dataclass(frozen=True)
class ContinueStatement(Statement):
    pass


@dataclass(frozen=True)
class PassStatement(Statement):
    pass


class Expression(Node):
    pass


@dataclass(frozen=True)
class Literal(Expression):
    value: Union[float, str, bool]
    literal_type: str


@dataclass(frozen=True)
class Identifier(Expression):
    name: str


@dataclass(frozen=True)
class UnaryOp(Expression):
    operator: str
    operand: Expression


@dataclass(frozen=True)
class BinaryOp(Expression):
    operator: str
    left: Expression
    right: Expression


@dataclass(frozen=True)
class ArrayLiteral(Expression):
    items: List[Expression]


@dataclass(frozen=True)
class ObjectLiteral(Expression):
    entries: List[Tuple[str, Expression]]


@dataclass(frozen=True)
class IndexExpression(Expression):
    base: Expression
    index: Expression


@dataclass(frozen=True)
class SliceExpression(Expression):
    base: Expression
    start: Optional[Expression]
    end: Optional[Expression]


@dataclass(frozen=True)
class MemberExpression(Expression):
    base: Expression
    member: str


@dataclass(frozen=True)
class LengthExpression(Expression):
    operand: Expression


@dataclass(frozen=True)
class RandomExpression(Expression):
    pass


@dataclass(frozen=True)
class RandintExpression(Expression):
    low: Expression
    high: Expression


@dataclass(frozen=True)
class BuiltinCall(Expression):
    name: str
    args: List[Expression]


@dataclass(frozen=True)
class CallExpression(Expression):
    name: str
    args: List[Expression]


# Call names with dedicated statement forms. Resolved here, never at runtime,
# so a user function can not shadow them.
BUILTIN_STATEMENT_NAMES: Dict[str, str] = {
    "print": "print",
    "打印": "print",
    "append": "append",
    "添加": "append",
    "pop": "pop",
    "弹出": "pop",
    "insert": "insert",
    "插入": "insert",
}

LENGTH_NAMES = frozenset({"len", "长度"})
RANDOM_NAMES = frozenset({"random", "随机"})
RANDINT_NAMES = frozenset({"randint", "随机整数"})

RESERVED_CALL_NAMES = frozenset(BUILTIN_STATEMENT_NAMES) | LENGTH_NAMES | RANDOM_NAMES | RANDINT_NAMES

COMPARISON_OPERATORS: Dict[TokenType, str] = {
    TokenType.EQ: "==",
    TokenType.NE: "!=",
    TokenType.LT: "<",
    TokenType.GT: ">",
    TokenType.LE: "<=",
    TokenType.GE: ">=",
    TokenType.IN: "in",
}

ADDITIVE_OPERATORS: Dict[TokenType, str] = {
    TokenType.PLUS: "+",
    TokenType.MINUS: "-",
}

MULTIPLICATIVE_OPERATORS: Dict[TokenType, str] = {
    TokenType.STAR: "*",
    TokenType.SLASH: "/",
    TokenType.PERCENT: "%",
    TokenType.FLOOR_DIV: "//",
}

AUGMENTED_OPERATORS: Dict[TokenType, str] = {
    TokenType.PLUS_ASSIGN: "+",
    TokenType.MINUS_ASSIGN: "-",
    TokenType.STAR_ASSIGN: "*",
    TokenType.SLASH_ASSIGN: "/",
}

_STATEMENT_END = (TokenType.NEWLINE, TokenType.EOF)


def describe_token(token: Token) -> str:
    if token.type is TokenType.EOF:
        return "end of input"
    if token.type is TokenType.NEWLINE:
        return "end of line"
    if token.type in (TokenType.INDENT, TokenType.DEDENT):
        return token.type.value
    if token.type is TokenType.STRING:
        return f'string "{token.value}"'
    if token.type is TokenType.NUMBER:
        return f"number {token.value:g}"
    return f"'{token.value}'"


class Parser:
    def __init__(
        self,
        tokens: List[Token],
        filename: str = "<string>",
        source_lines: Optional[List[str]] = None,
    ):
        if not tokens or tokens[-1].type is not TokenType.EOF:
            raise ParseError("Token stream must end with EOF", tokens[-1].line if tokens else 1)
        self.tokens = tokens
        self.filename = filename
        self.source_lines = source_lines or []
        self.index = 0

    def parse(self) -> Program:
        first: Token = self._peek()
        statements: List[Statement] = self._parse_statements(stop_tokens={TokenType.EOF})
        return Program(location=self._location_from_token(first), statements=statements)

    def _parse_statements(self, stop_tokens: Iterable[TokenType]) -> List[Statement]:
        statements: List[Statement] = []
        while self._peek().type not in stop_tokens:
            if self._match(TokenType.NEWLINE):
                continue
            if self._peek().type is TokenType.INDENT:
                raise self._error("Unexpected indentation", self._peek(), "Remove the extra spaces at the start of the line")
            statements.append(self._parse_statement())
        return statements

    def _parse_statement(self) -> Statement:
        token = self._peek()
        if token.type is TokenType.IF:
            return self._parse_if()
        if token.type is TokenType.WHILE:
            return self._parse_while()
        if token.type is TokenType.REPEAT:
            return self._parse_repeat()
        if token.type is TokenType.FOR:
            return self._parse_for()
        if token.type is TokenType.DEF:
            return self._parse_def()
        if token.type is TokenType.RETURN:
            return self._parse_return()
        if token.type is TokenType.BREAK:
            self._advance()
            self._expect_statement_end()
            return BreakStatement(location=self._location_from_token(token))
        if token.type is TokenType.CONTINUE:
            self._advance()
            self._expect_statement_end()
            return ContinueStatement(location=self._location_from_token(token))
        if token.type is TokenType.PASS:
            self._advance()
            self._expect_statement_end()
            return PassStatement(location=self._location_from_token(token))
        return self._parse_simple_statement()

    def _parse_simple_statement(self) -> Statement:
        start = self._peek()
        location = self._location_from_token(start)
        expr: Expression = self._parse_expression()
        current = self._peek()

        if current.type in AUGMENTED_OPERATORS:
            if not isinstance(expr, Identifier):
                raise self._error(
                    "Augmented assignment needs a variable name on the left",
                    current,
                    "Write it as x += 1",
                )
            self._advance()
            value = self._parse_expression()
            self._expect_statement_end()
            return AugmentedAssignment(
                location=location,
                target=expr.name,
                operator=AUGMENTED_OPERATORS[current.type],
                expression=value,
            )

        if current.type is TokenType.ASSIGN:
            self._advance()
            value = self._parse_expression()
            self._expect_statement_end()
            if isinstance(expr, Identifier):
                return Assignment(location=location, target=expr.name, expression=value)
            if isinstance(expr, IndexExpression):
                return IndexAssignment(location=location, base=expr.base, index=expr.index, expression=value)
            if isinstance(expr, MemberExpression):
                return MemberAssignment(location=location, base=expr.base, member=expr.member, expression=value)
            raise self._error(
                "Invalid assignment target",
                start,
                "Assign to a variable, an element such as arr[0], or a field such as obj.x",
            )

        self._expect_statement_end()
        return ExpressionStatement(location=location, expression=expr)

    def _parse_if(self) -> IfStatement:
        keyword = self._consume(TokenType.IF)
        condition: Expression = self._parse_expression()
        then_block: Block = self._parse_block()
        elifs: List[IfBranch] = []
        while self._peek().type is TokenType.ELIF:
            self._advance()
            cond: Expression = self._parse_expression()
            block: Block = self._parse_block()
            elifs.append(IfBranch(condition=cond, block=block))
        else_block: Optional[Block] = None
        if self._match(TokenType.ELSE):
            else_block = self._parse_block()
        return IfStatement(
            location=self._location_from_token(keyword),
            condition=condition,
            then_block=then_block,
            elifs=elifs,
            else_block=else_block,
        )

    def _parse_while(self) -> WhileStatement:
        keyword = self._consume(TokenType.WHILE)
        condition: Expression = self._parse_expression()
        self._match(TokenType.DO)
        block: Block = self._parse_block()
        return WhileStatement(location=self._location_from_token(keyword), condition=condition, block=block)

    def _parse_repeat(self) -> RepeatStatement:
        keyword = self._consume(TokenType.REPEAT)
        count: Expression = self._parse_expression()
        self._consume(TokenType.TIMES, "Write the loop as: repeat 3 times:")
        block: Block = self._parse_block()
        return RepeatStatement(location=self._location_from_token(keyword), count=count, block=block)

    def _parse_for(self) -> Statement:
        keyword = self._consume(TokenType.FOR)
        counter = self._consume(TokenType.IDENTIFIER, "A loop variable name must follow 'for'")
        self._consume(TokenType.IN, "Write the loop as: for i in range(5):")
        location = self._location_from_token(keyword)
        if self._peek().type is TokenType.RANGE:
            range_token = self._advance()
            self._consume(TokenType.LPAREN)
            args = self._parse_arguments()
            if not 1 <= len(args) <= 3:
                raise self._error(
                    f"range() takes 1 to 3 arguments but {len(args)} were given",
                    range_token,
                    "Use range(stop), range(start, stop) or range(start, stop, step)",
                )
            block = self._parse_block()
            if len(args) == 1:
                return ForRangeStatement(location=location, counter=str(counter.value), start=None, stop=args[0], step=None, block=block)
            step = args[2] if len(args) == 3 else None
            return ForRangeStatement(location=location, counter=str(counter.value), start=args[0], stop=args[1], step=step, block=block)
        iterable: Expression = self._parse_expression()
        block = self._parse_block()
        return ForEachStatement(location=location, counter=str(counter.value), iterable=iterable, block=block)

    def _parse_def(self) -> FuncDef:
        keyword = self._consume(TokenType.DEF)
        name_token = self._consume(TokenType.IDENTIFIER, "A function name must follow 'def'")
        name = str(name_token.value)
        if name in RESERVED_CALL_NAMES:
            raise self._error(f"'{name}' is a built-in function and can not be redefined", name_token, "Pick another name")
        self._consume(TokenType.LPAREN)
        params: List[str] = []
        if self._peek().type is not TokenType.RPAREN:
            while True:
                param = self._consume(TokenType.IDENTIFIER, "Parameters must be names")
                if param.value in params:
                    raise self._error(f"Duplicate parameter '{param.value}'", param)
                params.append(str(param.value))
                if not self._match(TokenType.COMMA):
                    break
        self._consume(TokenType.RPAREN)
        body: Block = self._parse_block()
        return FuncDef(location=self._location_from_token(keyword), name=name, params=params, body=body)

    def _parse_return(self) -> ReturnStatement:
        keyword = self._consume(TokenType.RETURN)
        expression: Optional[Expression] = None
        if self._peek().type not in _STATEMENT_END:
            expression = self._parse_expression()
        self._expect_statement_end()
        return ReturnStatement(location=self._location_from_token(keyword), expression=expression)

    def _parse_block(self) -> Block:
        colon = self._consume(TokenType.COLON, "Blocks start with ':' at the end of the line")
        if self._peek().type is not TokenType.NEWLINE:
            raise self._error("Expected a new line after ':'", self._peek(), "Put the block body on the following lines, indented")
        self._advance()
        if self._peek().type is not TokenType.INDENT:
            raise self._error("Expected an indented block", self._peek(), "Indent the block body, for example with 4 spaces")
        self._advance()
        statements: List[Statement] = self._parse_statements(stop_tokens={TokenType.DEDENT, TokenType.EOF})
        self._consume(TokenType.DEDENT)
        return Block(location=self._location_from_token(colon), statements=statements)

    # ---- expressions ----

    def _parse_expression(self) -> Expression:
        return self._parse_or()

    def _parse_or(self) -> Expression:
        left = self._parse_and()
        while self._peek().type is TokenType.OR:
            token = self._advance()
            right = self._parse_and()
            left = BinaryOp(location=self._location_from_token(token), operator="or", left=left, right=right)
        return left

    def _parse_and(self) -> Expression:
        left = self._parse_not()
        while self._peek().type is TokenType.AND:
            token = self._advance()
            right = self._parse_not()
            left = BinaryOp(location=self._location_from_token(token), operator="and", left=left, right=right)
        return left

    def _parse_not(self) -> Expression:
        if self._peek().type is TokenType.NOT:
            token = self._advance()
            operand = self._parse_not()
            return UnaryOp(location=self._location_from_token(token), operator="not", operand=operand)
        return self._parse_comparison()

    def _parse_comparison(self) -> Expression:
        left = self._parse_additive()
        while self._peek().type in COMPARISON_OPERATORS:
            token = self._advance()
            right = self._parse_additive()
            left = BinaryOp(location=self._location_from_token(token), operator=COMPARISON_OPERATORS[token.type], left=left, right=right)
        return left

    def _parse_additive(self) -> Expression:
        left = self._parse_multiplicative()
        while self._peek().type in ADDITIVE_OPERATORS:
            token = self._advance()
            right = self._parse_multiplicative()
            left = BinaryOp(location=self._location_from_token(token), operator=ADDITIVE_OPERATORS[token.type], left=left, right=right)
        return left

    def _parse_multiplicative(self) -> Expression:
        left = self._parse_unary()
        while self._peek().type in MULTIPLICATIVE_OPERATORS:
            token = self._advance()
            right = self._parse_unary()
            left = BinaryOp(location=self._location_from_token(token), operator=MULTIPLICATIVE_OPERATORS[token.type], left=left, right=right)
        return left

    def _parse_unary(self) -> Expression:
        if self._peek().type is TokenType.MINUS:
            token = self._advance()
            operand = self._parse_unary()
            return UnaryOp(location=self._location_from_token(token), operator="-", operand=operand)
        return self._parse_power()

    def _parse_power(self) -> Expression:
        base = self._parse_postfix()
        if self._peek().type is TokenType.POWER:
            token = self._advance()
            # Right associative; the exponent may carry its own unary minus.
            exponent = self._parse_unary()
            return BinaryOp(location=self._location_from_token(token), operator="**", left=base, right=exponent)
        return base

    def _parse_postfix(self) -> Expression:
        expr = self._parse_primary()
        while True:
            token = self._peek()
            if token.type is TokenType.LBRACKET:
                expr = self._parse_index_suffix(expr)
                continue
            if token.type is TokenType.DOT:
                self._advance()
                member = self._consume(TokenType.IDENTIFIER, "A field name must follow '.'")
                if self._peek().type is TokenType.LPAREN:
                    raise self._error(
                        "Method calls are not supported",
                        member,
                        f"Call a function instead, for example {member.value}(...)",
                    )
                expr = MemberExpression(location=self._location_from_token(token), base=expr, member=str(member.value))
                continue
            return expr

    def _parse_index_suffix(self, base: Expression) -> Expression:
        lbracket = self._consume(TokenType.LBRACKET)
        location = self._location_from_token(lbracket)
        if self._match(TokenType.COLON):
            end = None if self._peek().type is TokenType.RBRACKET else self._parse_expression()
            self._consume(TokenType.RBRACKET)
            return SliceExpression(location=location, base=base, start=None, end=end)
        first = self._parse_expression()
        if self._match(TokenType.COLON):
            end = None if self._peek().type is TokenType.RBRACKET else self._parse_expression()
            self._consume(TokenType.RBRACKET)
            return SliceExpression(location=location, base=base, start=first, end=end)
        self._consume(TokenType.RBRACKET)
        return IndexExpression(location=location, base=base, index=first)

    def _parse_primary(self) -> Expression:
        token = self._peek()
        location = self._location_from_token(token)
        if token.type is TokenType.NUMBER:
            self._advance()
            return Literal(location=location, value=float(token.value), literal_type="NUM")  # type: ignore[arg-type]
        if token.type is TokenType.STRING:
            self._advance()
            return Literal(location=location, value=str(token.value), literal_type="STR")
        if token.type is TokenType.TRUE:
            self._advance()
            return Literal(location=location, value=True, literal_type="BOOL")
        if token.type is TokenType.FALSE:
            self._advance()
            return Literal(location=location, value=False, literal_type="BOOL")
        if token.type is TokenType.LPAREN:
            self._advance()
            expr: Expression = self._parse_expression()
            self._consume(TokenType.RPAREN, "Every '(' needs a matching ')'")
            return expr
        if token.type is TokenType.LBRACKET:
            return self._parse_array_literal()
        if token.type is TokenType.LBRACE:
            return self._parse_object_literal()
        if token.type is TokenType.IDENTIFIER:
            self._advance()
            name = str(token.value)
            if self._match(TokenType.LPAREN):
                return self._build_call(token, name, self._parse_arguments())
            return Identifier(location=location, name=name)
        if token.type is TokenType.RANGE:
            raise self._error("range() can only be used in a for loop", token, "Write it as: for i in range(5):")
        raise self._error(f"Unexpected {describe_token(token)} in expression", token)

    def _parse_arguments(self) -> List[Expression]:
        # Opening parenthesis already consumed.
        args: List[Expression] = []
        if self._peek().type is not TokenType.RPAREN:
            while True:
                args.append(self._parse_expression())
                if not self._match(TokenType.COMMA):
                    break
        self._consume(TokenType.RPAREN, "Every '(' needs a matching ')'")
        return args

    def _build_call(self, token: Token, name: str, args: List[Expression]) -> Expression:
        location = self._location_from_token(token)
        if name in BUILTIN_STATEMENT_NAMES:
            return BuiltinCall(location=location, name=BUILTIN_STATEMENT_NAMES[name], args=args)
        if name in LENGTH_NAMES:
            self._check_arity(token, name, args, 1)
            return LengthExpression(location=location, operand=args[0])
        if name in RANDOM_NAMES:
            self._check_arity(token, name, args, 0)
            return RandomExpression(location=location)
        if name in RANDINT_NAMES:
            self._check_arity(token, name, args, 2)
            return RandintExpression(location=location, low=args[0], high=args[1])
        return CallExpression(location=location, name=name, args=args)

    def _check_arity(self, token: Token, name: str, args: List[Expression], expected: int) -> None:
        if len(args) != expected:
            raise self._error(f"{name}() takes {expected} argument(s) but {len(args)} were given", token)

    def _parse_array_literal(self) -> ArrayLiteral:
        lbracket = self._consume(TokenType.LBRACKET)
        items: List[Expression] = []
        if self._peek().type is not TokenType.RBRACKET:
            while True:
                items.append(self._parse_expression())
                if not self._match(TokenType.COMMA):
                    break
                if self._peek().type is TokenType.RBRACKET:
                    break
        self._consume(TokenType.RBRACKET, "Every '[' needs a matching ']'")
        return ArrayLiteral(location=self._location_from_token(lbracket), items=items)

    def _parse_object_literal(self) -> ObjectLiteral:
        lbrace = self._consume(TokenType.LBRACE)
        entries: List[Tuple[str, Expression]] = []
        if self._peek().type is not TokenType.RBRACE:
            while True:
                key_token = self._peek()
                if key_token.type not in (TokenType.IDENTIFIER, TokenType.STRING):
                    raise self._error("Object keys must be names or strings", key_token)
                self._advance()
                self._consume(TokenType.COLON)
                entries.append((str(key_token.value), self._parse_expression()))
                if not self._match(TokenType.COMMA):
                    break
                if self._peek().type is TokenType.RBRACE:
                    break
        self._consume(TokenType.RBRACE, "Every '{' needs a matching '}'")
        return ObjectLiteral(location=self._location_from_token(lbrace), entries=entries)

    # ---- helpers ----

    def _expect_statement_end(self) -> None:
        token = self._peek()
        if token.type is TokenType.NEWLINE:
            self._advance()
            return
        if token.type is TokenType.EOF:
            return
        raise self._error(f"Unexpected {describe_token(token)} after statement", token, "Put each statement on its own line")

    def _consume(self, token_type: TokenType, suggestion: Optional[str] = None) -> Token:
        token = self._peek()
        if token.type is not token_type:
            raise self._error(
                f"Expected {self._expected_name(token_type)} but found {describe_token(token)}",
                token,
                suggestion,
            )
        self.index += 1
        return token

    def _expected_name(self, token_type: TokenType) -> str:
        spellings = KEYWORD_SPELLINGS.get(token_type)
        if spellings:
            return "'" + "' or '".join(spellings) + "'"
        return token_type.value

    def _match(self, token_type: TokenType) -> bool:
        if self._peek().type is token_type:
            self.index += 1
            return True
        return False

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        if token.type is not TokenType.EOF:
            self.index += 1
        return token

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _error(self, message: str, token: Token, suggestion: Optional[str] = None) -> ParseError:
        return ParseError(message, token.line, token.column, suggestion)

    def _location_from_token(self, token: Token) -> SourceLocation:
        line_index = token.line - 1
        statement = ""
        if 0 <= line_index < len(self.source_lines):
            statement = self.source_lines[line_index].strip()
        return SourceLocation(file=self.filename, line=token.line, column=token.column, statement=statement)


def parse(tokens: List[Token], source_lines: Optional[List[str]] = None, filename: str = "<string>") -> Program:
    return Parser(tokens, filename, source_lines).parse()
